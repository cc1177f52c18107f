"""
Placeholder-email policy used by the local-modification detector.

The field ownership table itself is static code (see
``identity_app.sync.pipeline.ownership``). What varies per deployment is how
the system recognises an email address that it wrote itself as a stand-in:
such addresses are not treated as locally set, so a directory value may still
replace them.

Settings come from ``SYNC_PLACEHOLDER_EMAIL_DOMAIN`` and
``SYNC_PLACEHOLDER_EMAIL_PATTERNS``; a JSON/YAML file referenced by
``SYNC_OWNERSHIP_POLICY_PATH`` overrides both.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, MutableMapping, Pattern, Sequence

import yaml


class OwnershipPolicyError(RuntimeError):
    """Raised when the placeholder policy configuration is invalid."""


@dataclass(frozen=True)
class PlaceholderEmailPolicy:
    """Describes which email values count as system placeholders."""

    domain: str | None = None
    patterns: tuple[Pattern[str], ...] = field(default_factory=tuple)

    def matches(self, email: str | None) -> bool:
        if email is None:
            return False
        candidate = email.strip().lower()
        if not candidate:
            return False
        if self.domain and candidate.endswith("@" + self.domain):
            return True
        return any(pattern.search(candidate) for pattern in self.patterns)

    def synthesize(self, external_id: str) -> str | None:
        """Return the stand-in address for ``external_id`` or ``None`` when no domain is configured."""
        if not self.domain:
            return None
        return f"{external_id.strip().lower()}@{self.domain}"

    def as_dict(self) -> dict[str, object]:
        return {
            "domain": self.domain,
            "patterns": [pattern.pattern for pattern in self.patterns],
        }


DEFAULT_POLICY = PlaceholderEmailPolicy()


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise OwnershipPolicyError(f"Ownership policy file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise OwnershipPolicyError(f"Unable to read ownership policy file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise OwnershipPolicyError(f"Ownership policy file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise OwnershipPolicyError("Ownership policy must be a JSON/YAML object.")
    return dict(data)


def _coerce_domain(value: object | None) -> str | None:
    if value is None:
        return None
    domain = str(value).strip().lower().lstrip("@")
    if not domain:
        return None
    if "@" in domain or " " in domain:
        raise OwnershipPolicyError(f"Placeholder email domain '{value}' is not a bare domain name.")
    return domain


def _coerce_patterns(value: object | None) -> tuple[Pattern[str], ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        raw_items: Sequence[object] = value.split(",")
    elif isinstance(value, Sequence) and not isinstance(value, bytes):
        raw_items = value
    else:
        raise OwnershipPolicyError(f"Expected sequence for placeholder patterns, got {type(value).__name__}.")

    compiled: list[Pattern[str]] = []
    for item in raw_items:
        text = str(item).strip()
        if not text:
            continue
        try:
            compiled.append(re.compile(text, re.IGNORECASE))
        except re.error as exc:
            raise OwnershipPolicyError(f"Invalid placeholder email pattern '{text}': {exc}") from exc
    return tuple(compiled)


def build_policy(*, domain: object | None = None, patterns: object | None = None) -> PlaceholderEmailPolicy:
    return PlaceholderEmailPolicy(domain=_coerce_domain(domain), patterns=_coerce_patterns(patterns))


def load_policy(config: Mapping[str, object] | None = None) -> PlaceholderEmailPolicy:
    """
    Load the active placeholder-email policy from a Flask config mapping.

    If ``SYNC_OWNERSHIP_POLICY_PATH`` is set, its JSON/YAML content (keys
    ``domain`` and ``patterns``) replaces the inline settings.
    """

    settings = config or {}
    override_path = settings.get("SYNC_OWNERSHIP_POLICY_PATH")
    if override_path:
        raw = _load_override(Path(str(override_path)))
        return build_policy(domain=raw.get("domain"), patterns=raw.get("patterns"))

    domain = settings.get("SYNC_PLACEHOLDER_EMAIL_DOMAIN")
    patterns = settings.get("SYNC_PLACEHOLDER_EMAIL_PATTERNS")
    if not domain and not patterns:
        return DEFAULT_POLICY
    return build_policy(domain=domain, patterns=patterns)


__all__ = [
    "DEFAULT_POLICY",
    "OwnershipPolicyError",
    "PlaceholderEmailPolicy",
    "build_policy",
    "load_policy",
]
