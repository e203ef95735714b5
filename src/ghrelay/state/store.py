from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)


class CallbackState(BaseModel):
    callback_code: str = ""
    installation_ids: set[str] = set()


class WebhookState(BaseModel):
    deliveries: int = 0
    last_payload: Any = None


class StateDocument(Generic[T]):
    """Whole-document JSON persistence: load-or-default, overwrite on save.

    No locking; concurrent saves are last-writer-wins.
    """

    def __init__(self, path: Path | str, model: type[T]):
        self.path = Path(path)
        self.model = model
        self.data: T = self._load()

    def _load(self) -> T:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        try:
            raw = self.path.read_text()
            if not raw.strip():
                return self.model()
            return self.model.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            logging.warning("Ignoring unreadable state document %s: %s", self.path, e)
            return self.model()

    def save(self) -> None:
        self.path.write_text(self.data.model_dump_json())
        logging.debug("Saved state document %s", self.path)
