"""
Sandbox module for running AI-generated projects in isolated Docker containers.

Components:
- ports: allocate a free host port per sandbox
- archive: pack a workspace tree into a tar stream
- workspace: local mirror of each sandbox's files
- images: base image presence check and pull with fallback
- registry: create/start/stop/remove sandboxes, logs and ports
- sync: push the mirror into the running sandbox
- executor: run commands inside a sandbox with timeouts
- rebuild: resync, reinstall and restart the dev server
"""

from aidev.sandbox.executor import CommandChannel
from aidev.sandbox.images import ImagePuller
from aidev.sandbox.ports import PortAllocator, find_free_port
from aidev.sandbox.rebuild import RebuildPipeline
from aidev.sandbox.registry import SandboxController
from aidev.sandbox.sync import WorkspaceSync
from aidev.sandbox.template import render_template
from aidev.sandbox.workspace import WorkspaceMirror

__all__ = [
    # Ports
    "PortAllocator",
    "find_free_port",
    # Workspace
    "WorkspaceMirror",
    "WorkspaceSync",
    "render_template",
    # Lifecycle
    "ImagePuller",
    "SandboxController",
    # Execution
    "CommandChannel",
    "RebuildPipeline",
]
