from beanie import Document


class LedgerHead(Document):
    """Last appended seq per owner (``id`` is the owner id).

    Bumped inside every atomic unit that appends for the owner, so two units
    touching the same owner conflict and one of them retries.
    """
    id: str
    seq: int = 0
    locks: int = 0

    class Settings:
        name = "ledger_heads"
