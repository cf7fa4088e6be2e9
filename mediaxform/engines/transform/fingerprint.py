"""
Fingerprint Engine

fingerprint(source_id, spec) is a pure function: SHA-256 over the source id
and a canonical JSON serialization of the transform spec. Keys are sorted at every
level and absent or default stages are dropped, so neither field order nor
spelling out a no-op changes the result.
"""

import hashlib
import json
from typing import Any, Dict, Union

from mediaxform.engines.transform.schemas import TransformSpec
from mediaxform.pipeline import PIPELINE_VERSION


def _prune(value: Any) -> Any:
    if isinstance(value, dict):
        pruned = {key: _prune(item) for key, item in value.items()}
        return {
            key: item for key, item in pruned.items()
            if not (item is None or item is False or item == {})
        }
    return value


def canonical_spec(spec: Union[TransformSpec, Dict[str, Any]]) -> str:
    """Canonical serialization of a spec, stable under field reordering."""
    spec = TransformSpec.parse(spec)
    document = {
        "pipeline": PIPELINE_VERSION,
        "stages": _prune(spec.model_dump(mode="json", exclude_defaults=True)),
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def fingerprint(source_id: str, spec: Union[TransformSpec, Dict[str, Any]]) -> str:
    """Deterministic cache/idempotence key for (source object, spec)."""
    digest = hashlib.sha256()
    digest.update(source_id.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(canonical_spec(spec).encode("utf-8"))
    return digest.hexdigest()
