"""Session store with crash-safe, incremental persistence.

Layout (file store)::

    <root>/sessions/<session_id>/session.json
    <root>/sessions/<session_id>/participants/<participant_id>.json
    <root>/sessions/<session_id>/messages/<index>.json
    <root>/checkpoints/<thread_id>/<message_index>.json

``session.json`` is the commit point. It records the participant order and
the committed message count; message files at or past that count are
leftovers of an interrupted write and are ignored on load.
"""

import asyncio
import json
import logging
import os
import re
from abc import abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from huddle.errors import AmbiguousSessionError, PersistenceError, SessionNotFoundError
from huddle.models.checkpoint import Checkpoint
from huddle.models.conversation_session import Session
from huddle.models.message import Message
from huddle.models.participant import Participant
from huddle.services.interfaces.session_store import ISessionStore


logger = logging.getLogger(__name__)

STORE_VERSION = "1.0"
MANIFEST = "session.json"
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _index_name(index: int) -> str:
    return f"{index:010d}.json"


class DocumentSessionStore(ISessionStore):
    """Session store logic over a small JSON document interface.

    Subclasses provide atomic whole-document reads and writes. Writes for
    one session are serialized with a per-session lock.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._initialized = False

    # Document primitives

    @abstractmethod
    async def _read_document(self, parts: Sequence[str]) -> Optional[Dict[str, Any]]:
        """Return the document, or None when it does not exist."""
        pass

    @abstractmethod
    async def _write_document(self, parts: Sequence[str], data: Dict[str, Any]) -> None:
        """Replace the document atomically."""
        pass

    @abstractmethod
    async def _list_documents(self, parts: Sequence[str]) -> List[str]:
        """Names directly under ``parts``."""
        pass

    # Lifecycle

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        # Wait for in-flight writes before reporting closed.
        for lock in list(self._session_locks.values()):
            async with lock:
                pass
        self._initialized = False

    async def health_check(self) -> Dict[str, Any]:
        return {"initialized": self._initialized, "active_locks": len(self._session_locks)}

    # Helpers

    def _lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._session_locks:
            self._session_locks[session_id] = asyncio.Lock()
        return self._session_locks[session_id]

    @staticmethod
    def _check_id(value: str, what: str) -> None:
        if not _SAFE_ID.match(value):
            raise PersistenceError(f"Invalid {what} for storage: {value!r}")

    async def _read_manifest(self, session_id: str) -> Optional[Dict[str, Any]]:
        manifest = await self._read_document(("sessions", session_id, MANIFEST))
        if manifest is not None and manifest.get("version") != STORE_VERSION:
            raise PersistenceError(
                f"Session {session_id} was stored with unsupported version {manifest.get('version')}"
            )
        return manifest

    async def _write_manifest(self, session_id: str, manifest: Dict[str, Any]) -> None:
        manifest["saved_at"] = datetime.now(timezone.utc).isoformat()
        await self._write_document(("sessions", session_id, MANIFEST), manifest)

    async def _write_message(self, session_id: str, index: int, message: Message) -> None:
        await self._write_document(
            ("sessions", session_id, "messages", _index_name(index)),
            message.model_dump(mode="json")
        )

    async def _write_participant(self, session_id: str, participant: Participant) -> None:
        self._check_id(participant.id, "participant id")
        await self._write_document(
            ("sessions", session_id, "participants", f"{participant.id}.json"),
            participant.model_dump(mode="json")
        )

    # Session operations

    async def exists(self, session_id: str) -> bool:
        if not _SAFE_ID.match(session_id):
            return False
        return await self._read_manifest(session_id) is not None

    async def load(self, session_id: str) -> Session:
        """Load the last committed state of a session."""
        if not _SAFE_ID.match(session_id):
            raise SessionNotFoundError(session_id)

        manifest = await self._read_manifest(session_id)
        if manifest is None:
            raise SessionNotFoundError(session_id)

        try:
            participants = []
            for participant_id in manifest["participant_ids"]:
                data = await self._read_document(("sessions", session_id, "participants", f"{participant_id}.json"))
                if data is None:
                    raise PersistenceError(f"Session {session_id} is missing participant {participant_id}")
                participants.append(data)

            base_index = manifest["session"]["compaction"]["base_index"]
            messages = []
            for index in range(base_index, manifest["message_count"]):
                data = await self._read_document(("sessions", session_id, "messages", _index_name(index)))
                if data is None:
                    raise PersistenceError(f"Session {session_id} is missing message {index}")
                messages.append(data)

            return Session.model_validate({
                **manifest["session"],
                "participants": participants,
                "messages": messages
            })

        except (KeyError, TypeError, ValidationError) as e:
            raise PersistenceError(f"Stored session {session_id} is corrupt: {e}") from e

    async def save(self, session: Session) -> None:
        """Write participants, unsaved messages, then the manifest."""
        self._check_id(session.id, "session id")

        async with self._lock(session.id):
            existing = await self._read_manifest(session.id)
            committed = existing["message_count"] if existing else 0

            for participant in session.participants:
                await self._write_participant(session.id, participant)

            base_index = session.compaction.base_index
            for offset, message in enumerate(session.messages):
                index = base_index + offset
                if index < committed:
                    stored = await self._read_document(("sessions", session.id, "messages", _index_name(index)))
                    if stored is not None and stored.get("id") == message.id:
                        continue
                    if stored is not None:
                        raise PersistenceError(
                            f"Message {index} of session {session.id} is {stored.get('id')}, not {message.id}"
                        )
                await self._write_message(session.id, index, message)

            manifest = {
                "version": STORE_VERSION,
                "session": session.model_dump(mode="json", exclude={"participants", "messages"}),
                "participant_ids": session.participant_ids,
                "message_count": max(committed, session.message_count)
            }
            await self._write_manifest(session.id, manifest)

        self.logger.debug(f"Saved session {session.id} ({session.message_count} messages)")

    async def append_message(self, session_id: str, message: Message, index: int) -> None:
        """Persist one message and commit it.

        Re-appending the same message id at the same index is a no-op, so a
        retry after a failure is safe.
        """
        self._check_id(session_id, "session id")

        async with self._lock(session_id):
            manifest = await self._read_manifest(session_id)
            if manifest is None:
                raise SessionNotFoundError(session_id)

            committed = manifest["message_count"]
            if index > committed:
                raise PersistenceError(
                    f"Cannot append message at {index}; session {session_id} has {committed} messages"
                )

            if index < committed:
                stored = await self._read_document(("sessions", session_id, "messages", _index_name(index)))
                if stored is not None and stored.get("id") == message.id:
                    return
                raise PersistenceError(
                    f"Message index {index} of session {session_id} is already taken",
                    context={"session_id": session_id, "index": index}
                )

            await self._write_message(session_id, index, message)
            manifest["message_count"] = index + 1
            await self._write_manifest(session_id, manifest)

    async def upsert_participant(self, session_id: str, participant: Participant) -> None:
        self._check_id(session_id, "session id")

        async with self._lock(session_id):
            manifest = await self._read_manifest(session_id)
            if manifest is None:
                raise SessionNotFoundError(session_id)

            await self._write_participant(session_id, participant)
            if participant.id not in manifest["participant_ids"]:
                manifest["participant_ids"].append(participant.id)
                await self._write_manifest(session_id, manifest)

    async def get_messages(self, session_id: str) -> List[Message]:
        """Every committed message, compacted ones included."""
        if not _SAFE_ID.match(session_id):
            raise SessionNotFoundError(session_id)
        manifest = await self._read_manifest(session_id)
        if manifest is None:
            raise SessionNotFoundError(session_id)

        messages = []
        for index in range(manifest["message_count"]):
            data = await self._read_document(("sessions", session_id, "messages", _index_name(index)))
            if data is None:
                raise PersistenceError(f"Session {session_id} is missing message {index}")
            try:
                messages.append(Message.model_validate(data))
            except ValidationError as e:
                raise PersistenceError(f"Message {index} of session {session_id} is corrupt: {e}") from e
        return messages

    async def list_sessions(self) -> List[Dict[str, Any]]:
        sessions = []
        for session_id in await self._list_documents(("sessions",)):
            manifest = await self._read_manifest(session_id)
            if manifest is None:
                continue
            data = manifest["session"]
            sessions.append({
                "session_id": session_id,
                "team_id": data.get("team_id"),
                "mode": data.get("mode"),
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at"),
                "participants": manifest["participant_ids"],
                "message_count": manifest["message_count"],
                "rounds": data.get("routing_state", {}).get("round_counter", 0)
            })
        sessions.sort(key=lambda s: s["updated_at"] or "", reverse=True)
        return sessions

    async def resolve_session_id(self, prefix: str) -> str:
        if await self.exists(prefix):
            return prefix
        matches = [s for s in await self._list_documents(("sessions",)) if s.startswith(prefix)]
        if not matches:
            raise SessionNotFoundError(prefix)
        if len(matches) > 1:
            raise AmbiguousSessionError(prefix, matches)
        return matches[0]

    # Checkpoints

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._check_id(checkpoint.thread_id, "thread id")
        async with self._lock(f"checkpoint:{checkpoint.thread_id}"):
            await self._write_document(
                ("checkpoints", checkpoint.thread_id, _index_name(checkpoint.message_index)),
                checkpoint.model_dump(mode="json")
            )

    async def list_checkpoints(self, thread_id: str) -> List[int]:
        if not _SAFE_ID.match(thread_id):
            return []
        indices = []
        for name in await self._list_documents(("checkpoints", thread_id)):
            stem = name[:-len(".json")] if name.endswith(".json") else ""
            if stem.isdigit():
                indices.append(int(stem))
        return sorted(indices)

    async def load_checkpoint(self, thread_id: str, message_index: Optional[int] = None) -> Optional[Checkpoint]:
        if message_index is None:
            indices = await self.list_checkpoints(thread_id)
            if not indices:
                return None
            message_index = indices[-1]
        elif not _SAFE_ID.match(thread_id):
            return None

        data = await self._read_document(("checkpoints", thread_id, _index_name(message_index)))
        if data is None:
            return None
        try:
            return Checkpoint.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Checkpoint {message_index} of {thread_id} is corrupt: {e}") from e


class FileSessionStore(DocumentSessionStore):
    """JSON files on local disk, written with aiofiles and atomic renames."""

    def __init__(self, storage_path: str = "~/.huddle/sessions"):
        super().__init__()
        self.storage_path = Path(storage_path).expanduser()

    def _path(self, parts: Sequence[str]) -> Path:
        return self.storage_path.joinpath(*parts)

    async def initialize(self) -> None:
        """Create the storage root and clear temp files left by a crash."""
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            for leftover in self.storage_path.rglob(".*.tmp"):
                leftover.unlink()
        except OSError as e:
            raise PersistenceError(f"Cannot open session storage at {self.storage_path}: {e}") from e

        await super().initialize()
        self.logger.info(f"Session store opened at {self.storage_path}")

    async def _read_document(self, parts):
        path = self._path(parts)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt JSON in {path}: {e}") from e

    async def _write_document(self, parts, data):
        path = self._path(parts)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    async def _list_documents(self, parts):
        path = self._path(parts)
        if not path.is_dir():
            return []
        return sorted(entry.name for entry in path.iterdir() if not entry.name.startswith("."))


class InMemorySessionStore(DocumentSessionStore):
    """Process-local store used when persistence is disabled."""

    def __init__(self):
        super().__init__()
        self._documents: Dict[tuple, str] = {}

    async def _read_document(self, parts):
        raw = self._documents.get(tuple(parts))
        return None if raw is None else json.loads(raw)

    async def _write_document(self, parts, data):
        self._documents[tuple(parts)] = json.dumps(data)

    async def _list_documents(self, parts):
        depth = len(parts)
        names = {
            key[depth] for key in self._documents
            if len(key) > depth and key[:depth] == tuple(parts)
        }
        return sorted(names)
