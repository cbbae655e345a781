#!/usr/bin/env python3
"""
Main entry point for the Typer-based agent-worker CLI.

Delegates to the UI layer in agentworker.ui.cli to keep the console script
mapping stable.
"""

from agentworker.ui.cli import run as agent_worker


if __name__ == "__main__":
    agent_worker()
