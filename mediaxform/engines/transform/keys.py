"""
Cache key families.

obj:   object-read entries, deleted explicitly when the object is deleted
xform: transform results, keyed by source object and fingerprint
list:  owner list pages, keyed by the owner's current generation so a bump
       orphans every earlier page without touching it
ver:   the owner's generation counter itself
lease: short-lived in-progress marker for a (source, fingerprint) pair
"""


def object_key(owner_id: str, object_id: str) -> str:
    return f"obj:{owner_id}:{object_id}"


def transform_key(source_object_id: str, fingerprint: str) -> str:
    return f"xform:{source_object_id}:{fingerprint}"


def list_key(owner_id: str, generation: int, page: int, limit: int) -> str:
    return f"list:{owner_id}:v{generation}:page{page}:limit{limit}"


def version_key(owner_id: str) -> str:
    return f"ver:{owner_id}"


def lease_key(source_object_id: str, fingerprint: str) -> str:
    return f"lease:{source_object_id}:{fingerprint}"
