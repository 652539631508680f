import enum


class VidsaveError(RuntimeError):
    pass


class LinkRejectedKind(enum.Enum):
    NOT_A_URL = "not_a_url"
    HOST_NOT_ALLOWED = "host_not_allowed"
    UNRECOGNIZED_FORMAT = "unrecognized_format"


class LinkRejected(VidsaveError):
    def __init__(self, kind: LinkRejectedKind, text: str = "") -> None:
        super().__init__(f"link rejected ({kind.value}): {text[:200]}")
        self.kind = kind
        self.text = text


class FetchFailedKind(enum.Enum):
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    NO_OUTPUT_PRODUCED = "no_output_produced"


class FetchFailed(VidsaveError):
    def __init__(self, kind: FetchFailedKind, detail: str = "") -> None:
        super().__init__(f"fetch failed ({kind.value}): {detail}")
        self.kind = kind
        self.detail = detail


class SizeLimit(enum.Enum):
    CONFIGURED = "configured"
    TRANSPORT = "transport"


class SizeExceeded(VidsaveError):
    def __init__(self, limit_kind: SizeLimit, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"media is too large: size_bytes={size_bytes} {limit_kind.value}_limit={limit_bytes}"
        )
        self.limit_kind = limit_kind
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class DeliveryFailed(VidsaveError):
    pass


class CacheUnavailable(VidsaveError):
    pass
