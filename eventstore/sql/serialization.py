import msgpack


class RowSerializer:
    """MessagePack serializer for rows and request payloads on the wire."""

    @staticmethod
    def dumps(payload) -> bytes:
        """Serialize ``payload`` (dicts, lists, scalars) to bytes."""
        return msgpack.packb(payload, use_bin_type=True)

    @staticmethod
    def loads(data: bytes):
        """Deserialize MessagePack bytes back into Python objects."""
        if not data:
            return {}
        return msgpack.unpackb(data, raw=False)
