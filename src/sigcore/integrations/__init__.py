"""
Workspaces and provider integrations.
"""
