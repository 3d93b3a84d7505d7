"""
Core modules for AI Request Router.

This package contains intent classification, conversation context,
budget-aware model selection, quota enforcement and the task lifecycle.
"""
