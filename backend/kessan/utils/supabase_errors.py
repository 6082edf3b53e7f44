"""Helpers for handling Supabase errors gracefully."""


def is_unique_violation_error(error: Exception) -> bool:
    """
    Return True when Supabase reports a unique constraint violation.

    PostgREST surfaces PostgreSQL error code 23505 with a message like
    'duplicate key value violates unique constraint "earnings_documents_content_hash_key"'.
    Concurrent writers racing on the same key land here, which callers treat
    as "already exists" rather than as a failure.
    """
    code = getattr(error, "code", None)
    if code is not None and str(code) == "23505":
        return True

    message = str(error)
    if not message:
        return False

    lowered = message.lower()
    return (
        "23505" in lowered
        or "duplicate key" in lowered
        or "unique constraint" in lowered
    )
