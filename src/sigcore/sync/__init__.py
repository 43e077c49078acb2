"""
Background provider history synchronization.
"""
