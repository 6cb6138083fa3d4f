"""
Entry point for running opencode-claw as a module: python -m opencode_claw
"""

from opencode_claw.cli.commands import app

if __name__ == "__main__":
    app()
