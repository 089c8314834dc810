"""Deterministic keys for deduplicating provider events and reservations.

Keys are a lookup aid for the webhook ledger. Uniqueness is enforced by the
(provider, event_id) constraint, never by the key alone.
"""


def for_webhook(provider: str, event_id: str, metadata: dict[str, str] | None = None) -> str:
    base = f"{provider}:{event_id}"
    if not metadata:
        return base

    # Sorted so the key does not depend on the caller's dict ordering
    suffix = "&".join(f"{key}={metadata[key]}" for key in sorted(metadata))
    return f"{base}:{suffix}"


def for_reservation(provider: str, payment_id: str, puppy_id: str) -> str:
    return f"{provider}:{payment_id}:{puppy_id}"

