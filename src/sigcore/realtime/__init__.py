"""
Realtime push of conversation activity to connected clients.
"""
