"""
BranchChat - local-first, multi-provider, branching chat engine.
"""
__version__ = "1.0.0"
