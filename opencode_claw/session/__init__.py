"""Session binding module."""

from opencode_claw.session.manager import SessionInfo, SessionManager, build_peer_key, build_session_key

__all__ = ["SessionInfo", "SessionManager", "build_peer_key", "build_session_key"]
