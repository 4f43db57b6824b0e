from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import CONFIG
from .crypto import blake2b_224_hex, script_address
from .errors import UnknownTemplate
from .models import AttachedScript, canonical_json
from .onchain import VALIDATORS

logger = logging.getLogger(__name__)

CODE_VERSION = "v1"


class ScriptTemplateRepository:
    """Maps template ids to the compiled code the deriver hashes."""

    def __init__(self, templates: dict[str, bytes] | None = None):
        self._templates: dict[str, bytes] = dict(templates or {})

    @classmethod
    def default(cls) -> "ScriptTemplateRepository":
        return cls({template_id: f"{template_id}@{CODE_VERSION}".encode("utf-8") for template_id in VALIDATORS})

    def code(self, template_id: str) -> bytes:
        try:
            return self._templates[template_id]
        except KeyError as exc:
            raise UnknownTemplate(f"Unknown script template: {template_id}") from exc

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates


@dataclass(frozen=True)
class ScriptIdentity:
    template_id: str
    parameters: list[Any] = field(hash=False, compare=True)
    code_hash: str = ""
    address: str = ""

    @property
    def policy_id(self) -> str:
        return self.code_hash

    def unit(self, asset_name_hex: str = "") -> str:
        return f"{self.code_hash}{asset_name_hex}"

    def attachment(self) -> AttachedScript:
        return AttachedScript(template_id=self.template_id, parameters=list(self.parameters))

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "parameters": list(self.parameters),
            "code_hash": self.code_hash,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScriptIdentity":
        return cls(
            template_id=str(data["template_id"]),
            parameters=list(data.get("parameters", [])),
            code_hash=str(data["code_hash"]),
            address=str(data["address"]),
        )


class ScriptDeriver:
    """Derives script identities from a template and its applied parameters.

    Parameters are embedded into the code before hashing, so any change to the
    parameter tuple yields a different hash, address and policy id. Results
    are cached by (template id, canonical parameters).
    """

    def __init__(self, repository: ScriptTemplateRepository | None = None, symbol: str = CONFIG.symbol):
        self.repository = repository or ScriptTemplateRepository.default()
        self.symbol = symbol
        self._cache: dict[tuple[str, str], ScriptIdentity] = {}

    def applied_code(self, template_id: str, parameters: Iterable[Any]) -> bytes:
        code = self.repository.code(template_id)
        return code + b"\x00" + canonical_json(list(parameters)).encode("utf-8")

    def derive(self, template_id: str, parameters: Iterable[Any] = ()) -> ScriptIdentity:
        params = list(parameters)
        key = (template_id, canonical_json(params))
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        code_hash = blake2b_224_hex(self.applied_code(template_id, params))
        identity = ScriptIdentity(
            template_id=template_id,
            parameters=params,
            code_hash=code_hash,
            address=script_address(code_hash, self.symbol),
        )
        self._cache[key] = identity
        logger.debug("Derived %s -> %s", template_id, code_hash)
        return identity

    def from_attachment(self, script: AttachedScript) -> ScriptIdentity:
        return self.derive(script.template_id, script.parameters)
