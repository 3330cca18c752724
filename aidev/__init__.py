"""
AI Dev Sandbox Engine.

Provisions Docker sandboxes for AI-generated projects, mirrors their
workspaces locally and relays file edits and commands into them.
"""

__version__ = "0.2.0"
