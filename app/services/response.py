from app.services.common import list_response


class ListResponseMixin:
    """Adds ``list_response`` to services that expose a ``list`` staticmethod."""

    @classmethod
    def list_response(cls, db, limit: int, offset: int, **filters):
        items = cls.list(db, limit=limit, offset=offset, **filters)
        return list_response(items, limit, offset)
