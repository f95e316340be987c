"""Message records and decryption outcomes."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Union

from crypto.primitives import EncryptedEnvelope


def _parse_timestamp(value: str) -> datetime:
    """ISO timestamp as naive UTC, so records from any source compare."""
    created_at = datetime.fromisoformat(value)
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    return created_at


@dataclass(frozen=True)
class MessageRecord:
    """A stored message as returned by the message store (still encrypted)."""
    id: int
    ref: str
    sender_id: str
    envelope: EncryptedEnvelope
    created_at: datetime

    @classmethod
    def from_dict(cls, ref: str, data: Dict) -> 'MessageRecord':
        """
        Create from the server's JSON representation.

        Raises:
            KeyError, TypeError, ValueError: If a field is missing or malformed
        """
        envelope = EncryptedEnvelope.from_dict(data)
        if not isinstance(envelope.ciphertext, str) or not isinstance(envelope.iv, str):
            raise TypeError("envelope fields must be strings")
        return cls(
            id=int(data['id']),
            ref=ref,
            sender_id=str(data['senderId']),
            envelope=envelope,
            created_at=_parse_timestamp(data['createdAt']),
        )

    @classmethod
    def unreadable(cls, ref: str, record_id: int, data: Dict) -> 'MessageRecord':
        """
        Stand-in for a record whose fields are malformed.

        Its empty envelope never decrypts, so it is shown as a failed message
        instead of taking down the rest of the batch.
        """
        try:
            created_at = _parse_timestamp(data['createdAt'])
        except (KeyError, TypeError, ValueError):
            created_at = datetime.min
        return cls(
            id=record_id,
            ref=ref,
            sender_id=str(data.get('senderId', '')),
            envelope=EncryptedEnvelope(ciphertext='', iv=''),
            created_at=created_at,
        )


@dataclass(frozen=True)
class Decrypted:
    plaintext: str


@dataclass(frozen=True)
class Failed:
    reason: str


DecryptionOutcome = Union[Decrypted, Failed]


@dataclass(frozen=True)
class ChatMessage:
    """A message record paired with the result of decrypting it."""
    record: MessageRecord
    content: DecryptionOutcome

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def is_decrypted(self) -> bool:
        return isinstance(self.content, Decrypted)

    def sort_key(self):
        return (self.record.created_at, self.record.id)

    def display_text(self) -> str:
        if isinstance(self.content, Decrypted):
            return self.content.plaintext
        return "[could not decrypt]"
