import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from common.ids import ascending
from common.jsonio import atomic_write_json, load_json

from bellows.config import resolve_model_alias
from bellows.errors import NotFoundError
from bellows.session.message import (
    AssistantMessage,
    ModelRef,
    Part,
    ToolPart,
    ToolStateCompleted,
    message_adapter,
    part_adapter,
)
from bellows.session.schema import Session
from bellows.session.store import MessageStore

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rehome(part: Part, session_id: str, message_id: str) -> Part:
    """Give ``part`` a fresh id under a new owner, including tool attachments."""
    owner = {"session_id": session_id, "message_id": message_id}
    if isinstance(part, ToolPart) and isinstance(part.state, ToolStateCompleted):
        attachments = [
            file.model_copy(update={"id": ascending("part"), **owner})
            for file in part.state.attachments
        ]
        part = part.model_copy(
            update={"state": part.state.model_copy(update={"attachments": attachments})}
        )
    return part.model_copy(update={"id": ascending("part"), **owner})


class SessionManager:
    """Session lifecycle on top of a message store, including export and import."""

    def __init__(self, store: MessageStore):
        self.store = store

    def create_session(
        self,
        title: str | None = None,
        model: str | ModelRef | None = None,
        agent: str = "build",
    ) -> Session:
        if isinstance(model, str):
            model = ModelRef.parse(resolve_model_alias(model))
        now = _now_iso()
        session = Session(
            id=ascending("session"),
            title=title,
            created_at=now,
            updated_at=now,
            model=model,
            agent=agent,
        )
        self.store.save_session(session)
        logger.info(f"Created session {session.id}")
        return session

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def list_sessions(self) -> list[Session]:
        return self.store.list_sessions()

    def update_session(self, session_id: str, **changes: Any) -> Session:
        session = self.get_session(session_id)
        updated = session.model_copy(update={**changes, "updated_at": _now_iso()})
        self.store.save_session(updated)
        return updated

    def touch(self, session_id: str) -> Session:
        return self.update_session(session_id)

    def rename(self, session_id: str, title: str) -> Session:
        return self.update_session(session_id, title=title)

    def delete_session(self, session_id: str) -> None:
        self.get_session(session_id)
        self.store.delete_session(session_id)
        logger.info(f"Deleted session {session_id}")

    def export_session(self, session_id: str) -> dict[str, Any]:
        session = self.get_session(session_id)
        messages = [
            {
                "info": item.info.model_dump(mode="json"),
                "parts": [part.model_dump(mode="json") for part in item.parts],
            }
            for item in self.store.stream_messages(session_id)
        ]
        messages.reverse()
        logger.info(f"Exported session {session_id} ({len(messages)} messages)")
        return {
            "metadata": session.model_dump(mode="json"),
            "messages": messages,
            "exported_at": _now_iso(),
        }

    def export_to_file(self, session_id: str, path: str | Path) -> Path:
        target = Path(path)
        atomic_write_json(target, self.export_session(session_id))
        return target

    def import_session(self, data: dict[str, Any] | str) -> Session:
        """Recreate an exported session under a fresh session id.

        Message and part ids are regenerated in their original order so that the
        imported history sorts the same way; assistant ``parent_id`` links are
        remapped to the new user message ids.
        """
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid session export: {e}") from e
        if not isinstance(data, dict) or not data.get("metadata"):
            raise ValueError("Invalid session export: missing metadata")

        metadata = Session.model_validate(data["metadata"])
        now = _now_iso()
        session = metadata.model_copy(
            update={"id": ascending("session"), "created_at": now, "updated_at": now}
        )
        self.store.save_session(session)

        id_map: dict[str, str] = {}
        part_count = 0
        for entry in data.get("messages", []):
            info = message_adapter.validate_python(entry["info"])
            new_id = ascending("message")
            id_map[info.id] = new_id
            update: dict[str, Any] = {"id": new_id, "session_id": session.id}
            if isinstance(info, AssistantMessage):
                update["parent_id"] = id_map.get(info.parent_id, info.parent_id)
            self.store.save_message(info.model_copy(update=update))

            for raw in entry.get("parts", []):
                part = part_adapter.validate_python(raw)
                self.store.save_part(_rehome(part, session.id, new_id))
                part_count += 1

        logger.info(
            f"Imported session {metadata.id} as {session.id} "
            f"({len(id_map)} messages, {part_count} parts)"
        )
        return session

    def import_from_file(self, path: str | Path) -> Session:
        data = load_json(path)
        if data is None:
            raise NotFoundError(f"Export file not found: {path}")
        return self.import_session(data)
