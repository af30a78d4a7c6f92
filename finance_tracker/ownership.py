from .errors import EntityNotFound, PermissionDenied


def can_mutate(entity, acting_user_id):
    return entity is not None and entity["user_id"] == acting_user_id


def require_owner(entity, acting_user_id, not_found="Not found", forbidden=None):
    """Return ``entity`` when ``acting_user_id`` owns it.

    Raises ``EntityNotFound`` for a missing row and ``PermissionDenied`` for
    a row owned by someone else.
    """
    if entity is None:
        raise EntityNotFound(not_found)
    if not can_mutate(entity, acting_user_id):
        raise PermissionDenied(forbidden)
    return entity


def coerce_id(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None
