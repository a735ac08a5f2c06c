from matchmaking.models.document import DocumentRecord

__all__ = ["DocumentRecord"]
