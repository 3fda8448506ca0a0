from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from .chat_types import ChatHistory
from .protocol import ProtocolError, history_from_dict, history_to_dict

logger = logging.getLogger(__name__)


class PersistError(RuntimeError):
    pass


class HistoryStore:
    """Reads and rewrites the single JSON document holding the chat history."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self, *, default_model: str) -> ChatHistory:
        """Load the persisted history.

        A missing, unreadable, or malformed file yields an empty history bound to
        `default_model`; the bad file is left in place and overwritten on the
        next save.
        """
        empty = ChatHistory(messages=(), current_model=default_model)
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return empty
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable history file %s: %s", self.path, exc)
            return empty

        try:
            return history_from_dict(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed history file %s: %s", self.path, exc)
            return empty

    def save(self, history: ChatHistory) -> None:
        encoded = json.dumps(history_to_dict(history), ensure_ascii=False, indent=2) + "\n"

        tmp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.path.parent),
                delete=False,
                prefix="." + self.path.name + ".",
                suffix=".tmp",
            ) as f:
                tmp_path = Path(f.name)
                f.write(encoded)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise PersistError(f"Failed to write history file {self.path}: {exc}") from exc
        finally:
            if tmp_path is not None:
                try:
                    tmp_path.unlink(missing_ok=True)
                except OSError:
                    pass
