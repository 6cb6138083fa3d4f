"""CLI module for opencode-claw."""
