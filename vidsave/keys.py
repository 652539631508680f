import hashlib


def make_source_key(platform: str, video_id: str) -> str:
    return f"{platform}:{video_id}"


def content_digest(data: bytes) -> str:
    """Hex SHA-256 of the whole media payload."""
    return hashlib.sha256(data).hexdigest()
