class DeduplicationStore:
    """
    DeduplicationStore: Is a store for tracking usage records
    already counted from one log file.

    The assistant writes the same response several times while it
    streams; each copy shares the message id and the request id.
    Records are only deduplicated when both ids are present, the
    first copy wins. Without a request id a repeated message id is
    treated as a distinct chargeable record.

    One store lives for the duration of a single file decode on a
    single thread.
    """

    def __init__(self) -> "None":
        self._seen: "set[str]" = set()

    @staticmethod
    def make_key(message_id: "str", request_id: "str") -> "str":
        """
        constructs the composite key of a usage record.
        """
        return f"{message_id}:{request_id}"

    def is_new(
        self,
        message_id: "str | None",
        request_id: "str | None",
    ) -> "bool":
        """
        checks if the given record should be counted. If both ids are
        present the key is marked as seen, so later copies return False.
        """
        if message_id is None or request_id is None:
            return True

        key = self.make_key(message_id, request_id)
        if key in self._seen:
            return False

        self._seen.add(key)
        return True

    def __len__(self) -> "int":
        return len(self._seen)
