"""
Conversations, messages and calls, and the reconciliation engine that maintains them.
"""
