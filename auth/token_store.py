from __future__ import annotations

import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path

from auth.models import Credential


class CredentialStore(ABC):
    @abstractmethod
    async def load(self) -> Credential | None:
        raise NotImplementedError

    @abstractmethod
    async def save(self, credential: Credential) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self, credential: Credential | None = None) -> None:
        self._credential = credential
        self.saves = 0

    async def load(self) -> Credential | None:
        return self._credential

    async def save(self, credential: Credential) -> None:
        self._credential = credential
        self.saves += 1


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str | Path, *, clock=time.time) -> None:
        self._path = Path(path).expanduser()
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Credential | None:
        if not self._path.exists():
            return None

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise RuntimeError(f"Credential file is not valid JSON: {self._path}") from error
        if not isinstance(raw, dict):
            raise RuntimeError("Credential file is invalid; expected top-level JSON object.")
        return Credential.from_dict(raw)

    async def save(self, credential: Credential) -> None:
        payload = credential.to_dict()
        payload["saved_at"] = self._clock()
        self._write(payload)

    def _write(self, payload: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.write("\n")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
