"""
taskstack
=========

Runs a plan of code-change tasks against a git repository: validates the
dependency graph, executes tasks concurrently in isolated worktrees, and
composes their branches into a reviewable stack.
"""

__version__ = "0.1.0"
