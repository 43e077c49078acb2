"""
Provider adapters.

Keep package import side-effects to a minimum; import adapters from their modules.
"""
