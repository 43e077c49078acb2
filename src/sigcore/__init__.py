"""
sigcore: provider-agnostic telephony event pipeline.
"""

__version__ = "0.1.0"
