"""
chatwire — streaming chat client.
Sends a message to the chat backend and renders the reply as it streams in.
"""

__version__ = "0.1.0"
