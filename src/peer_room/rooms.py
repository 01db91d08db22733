"""Room identifiers."""

import uuid


def generate_room_id() -> str:
    """Return a fresh random (128-bit, UUID4) room identifier."""
    return str(uuid.uuid4())


def room_path(room_id: str) -> str:
    return f"/room/{room_id}"
