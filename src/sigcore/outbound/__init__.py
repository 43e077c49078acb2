"""
Outbound webhook subscriptions and event fan-out.
"""
