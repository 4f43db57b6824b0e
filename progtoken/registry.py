from __future__ import annotations

import json
import os
from pathlib import Path

from .errors import DuplicateRecord, RecordNotFound
from .family import TokenFamily


class FamilyRegistry:
    """Bootstrapped token families, persisted as JSON and keyed by name."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.families: dict[str, TokenFamily] = {}
        if self.path.exists():
            self.load()

    def load(self) -> None:
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        self.families = {name: TokenFamily.from_dict(item) for name, item in data.get("families", {}).items()}

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"families": {name: family.to_dict() for name, family in sorted(self.families.items())}}
        temp_path = self.path.with_suffix(".json.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self.path)

    def add(self, family: TokenFamily) -> None:
        if family.name in self.families:
            raise DuplicateRecord(f"Token family {family.name} is already registered")
        self.families[family.name] = family
        self.save()

    def get(self, name: str) -> TokenFamily:
        try:
            return self.families[name]
        except KeyError as exc:
            raise RecordNotFound(f"Unknown token family: {name}") from exc

    def names(self) -> list[str]:
        return sorted(self.families)
