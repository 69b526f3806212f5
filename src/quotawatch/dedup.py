import threading


class EventDeduplicator:
    """
    EventDeduplicator: Is a thread-safe store for tracking usage events
    already seen while reading logs.

    Conversation logs repeat the same assistant message when a session
    is resumed or a file is rotated mid-write, so a message would be
    counted twice without this. Events without any id are always new.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._seen: "set[str]" = set()

    @staticmethod
    def make_key(message_id: "str", request_id: "str") -> "str":
        """
        constructs a unique key for an event from its message and
        request ids.
        """
        return f"{message_id}|{request_id}"

    def is_new(self, message_id: "str", request_id: "str") -> "bool":
        """
        checks if the given event is new. If so, mark it as seen
        and returns True.
        """
        if not message_id and not request_id:
            return True
        key = self.make_key(message_id, request_id)
        with self._lock:
            if key in self._seen:
                return False

            self._seen.add(key)
            return True

    def __len__(self) -> "int":
        with self._lock:
            return len(self._seen)
