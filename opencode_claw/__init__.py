"""
opencode-claw - chat gateway for an OpenCode agent server.
"""

__version__ = "0.1.0"
__logo__ = "🦀"
