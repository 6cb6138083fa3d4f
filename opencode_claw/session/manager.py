"""Conversation-key to agent-session bindings."""

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from opencode_claw.runtime.base import AgentRuntime

DELETED_TITLE = "(deleted)"


def build_session_key(channel: str, peer_id: str, thread_id: str | None = None) -> str:
    """
    Conversation key for a (channel, peer, thread) triple.

    `<channel>:<peer>` or `<channel>:<peer>:thread:<thread>` when the
    conversation is scoped to a thread.
    """
    key = f"{channel}:{peer_id}"
    if thread_id:
        key = f"{key}:thread:{thread_id}"
    return key


def build_peer_key(channel: str, peer_id: str) -> str:
    """Peer-level key used for turn and question tracking; ignores threads."""
    return f"{channel}:{peer_id}"


@dataclass
class SessionInfo:
    """A runtime session as seen from one conversation."""
    id: str
    key: str
    title: str
    active: bool = False
    created_at: float | None = None


class SessionManager:
    """
    Owns the persistent map of conversation keys to session ids.

    Bindings are created lazily, repointed by /new, /switch and /fork, and
    written to a JSON file after every change.
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        persist_path: Path | str | None = None,
        title_template: str = "{channel}:{peer_id}",
    ):
        self.runtime = runtime
        self.persist_path = Path(persist_path).expanduser() if persist_path else None
        self.title_template = title_template
        self._bindings: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.load()

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def render_title(self, channel: str, peer_id: str, key: str) -> str:
        try:
            return self.title_template.format(channel=channel, peer_id=peer_id, key=key)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Invalid session title template {self.title_template!r}: {e}")
            return key

    def current_session(self, key: str) -> str | None:
        return self._bindings.get(key)

    @property
    def bindings(self) -> dict[str, str]:
        return dict(self._bindings)

    async def resolve_session(self, key: str, title: str | None = None) -> str:
        """Return the bound session id, creating and binding a session if absent."""
        async with self._lock(key):
            existing = self._bindings.get(key)
            if existing:
                return existing
            session_id = await self.runtime.create_session(title or key)
            self._bindings[key] = session_id
            self.persist()
            logger.info(f"Bound {key} to new session {session_id}")
            return session_id

    async def new_session(self, key: str, title: str | None = None) -> str:
        async with self._lock(key):
            if not title:
                title = f"New session {datetime.now(timezone.utc).isoformat()}"
            session_id = await self.runtime.create_session(title)
            self._bindings[key] = session_id
            self.persist()
            logger.info(f"Bound {key} to new session {session_id}")
            return session_id

    async def switch_session(self, key: str, session_id: str) -> None:
        async with self._lock(key):
            self._bindings[key] = session_id
            self.persist()
            logger.info(f"Switched {key} to session {session_id}")

    async def fork_session(self, key: str) -> str | None:
        """Fork the bound session and rebind to the fork. None when nothing is bound."""
        async with self._lock(key):
            current = self._bindings.get(key)
            if not current:
                return None
            forked = await self.runtime.fork_session(current)
            self._bindings[key] = forked
            self.persist()
            logger.info(f"Forked {current} into {forked} for {key}")
            return forked

    async def list_sessions(self, key: str, peer_key: str) -> list[SessionInfo]:
        """
        Sessions bound to any conversation of one peer, marking the one bound
        to `key` as active. Titles come from the runtime; sessions it no
        longer knows are listed as "(deleted)".
        """
        remote = {session.id: session for session in await self.runtime.list_sessions()}
        prefix = f"{peer_key}:"
        infos: list[SessionInfo] = []
        for bound_key, session_id in self._bindings.items():
            if bound_key != peer_key and not bound_key.startswith(prefix):
                continue
            session = remote.get(session_id)
            infos.append(
                SessionInfo(
                    id=session_id,
                    key=bound_key,
                    title=session.title if session else DELETED_TITLE,
                    active=bound_key == key,
                    created_at=session.created_at if session else None,
                )
            )
        return infos

    def load(self) -> None:
        if self.persist_path is None:
            return
        for path in (self.persist_path, self._backup_path(self.persist_path)):
            if not path.exists():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load session map from {path}: {e}")
                continue
            self._bindings = self._coerce(data)
            if path != self.persist_path:
                logger.warning(f"Recovered session map from backup file: {path}")
            return

    @staticmethod
    def _coerce(data: Any) -> dict[str, str]:
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str) and v}

    @staticmethod
    def _backup_path(path: Path) -> Path:
        return path.with_suffix(f"{path.suffix}.bak")

    def persist(self) -> None:
        if self.persist_path is None:
            return
        payload = json.dumps(self._bindings, indent=2, sort_keys=True)
        self._write_payload(self.persist_path, payload)

    def _write_payload(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        backup_path = self._backup_path(path)
        tmp_path: Path | None = None
        had_existing = path.exists()
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(path.parent),
                prefix=f"{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
                tmp_path = Path(tmp.name)

            if had_existing:
                path.replace(backup_path)
            tmp_path.replace(path)
        except Exception:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            if had_existing and backup_path.exists() and not path.exists():
                backup_path.replace(path)
            raise
