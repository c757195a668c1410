"""Test doubles and helpers shared by the test modules."""
import jwt

TEST_SECRET = "test-secret"


def make_token(user_id: str, username: str, secret: str = TEST_SECRET, **claims) -> str:
    """Issue a credential the way the account service does."""
    return jwt.encode({"userId": user_id, "username": username, **claims}, secret, algorithm="HS256")


class FakeWebSocket:
    """Records JSON sent by the server; optionally fails every send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail
        self.closed = False
        self.close_code = None

    async def send_json(self, data: dict) -> None:
        if self.fail or self.closed:
            raise RuntimeError("WebSocket is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def snapshots(self) -> list:
        return [m for m in self.sent if "online" in m]

    def of_type(self, event_type: str) -> list:
        return [m for m in self.sent if m.get("type") == event_type]

    def chat_messages(self) -> list:
        return [m for m in self.sent if "recipient" in m and "sender" in m]


def online_ids(snapshot: dict) -> list:
    return sorted(u["userId"] for u in snapshot["online"])
