"""gRPC transport between the coordinator and storage nodes.

Payloads are msgpack maps carried over generic unary method handlers, so no
generated stubs are required on either side.
"""

from ...sql.serialization import RowSerializer

SERVICE_NAME = "eventstore.Storage"

METHODS = ("Insert", "Select", "Count", "Bounds", "Fetch", "Delete", "DeleteOne", "Ping")

USER_HEADER = "x-storage-user"
PASSWORD_HEADER = "x-storage-password"

# upper bound on the rows packed into one message; gRPC rejects messages over 4 MB
MAX_PAYLOAD_BYTES = 2 * 1024 * 1024


def method_path(method: str) -> str:
    return f"/{SERVICE_NAME}/{method}"


def pack_rows(events, budget: int = MAX_PAYLOAD_BYTES) -> tuple[list[dict], bool]:
    """Return the leading ``events`` as dicts that fit in ``budget`` bytes.

    The flag is True when rows were left out. The first row is always
    included so an oversized row still makes progress.
    """
    rows: list[dict] = []
    size = 0
    for event in events:
        data = event.to_dict()
        n = len(RowSerializer.dumps(data))
        if rows and size + n > budget:
            return rows, True
        rows.append(data)
        size += n
    return rows, False
