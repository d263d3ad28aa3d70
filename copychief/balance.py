"""Token balance value types shared by the server and the client library.

Kept free of database and settings imports so the client can use them.
"""

from dataclasses import asdict, dataclass

# Pre-flight estimates per feature, in tokens
TOKEN_ESTIMATES: dict[str, int] = {
    "generate_copy_short": 2000,
    "generate_copy_long": 8000,
    "optimize_copy": 3000,
    "brainstorm_ideas": 1500,
    "generate_headlines": 1200,
    "rewrite_copy": 2500,
    "analyze_competitor": 4000,
    "chat_message": 1000,
    "custom_agent": 2000,
}

DEFAULT_ESTIMATE = 2000


@dataclass(frozen=True)
class AccountBalance:
    """Snapshot of an account's token economy."""

    account_id: int
    monthly: int
    extra: int
    consumed: int
    reserved: int = 0
    monthly_allowance: int = 0

    @property
    def available(self) -> int:
        return max(0, self.monthly + self.extra)

    @property
    def spendable(self) -> int:
        """Available balance minus in-flight reservation holds."""
        return max(0, self.available - self.reserved)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["available"] = self.available
        return data
