"""
Repository adapter over the Django ORM.

Services go through ModelRepository instead of ``Model.objects`` so that the
persistence contract (find, find_by_id, insert, update, delete, count,
aggregate) lives in one place.
"""

import logging
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from django.db import models
from django.db.models import Q, QuerySet

from .exceptions import NotFound

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=models.Model)

Filters = Union[Mapping[str, Any], Q, None]


class ModelRepository(Generic[M]):
    def __init__(self, model: Type[M], lookup_field: str = "pk", related: Sequence[str] = (),
                 prefetch: Sequence[str] = ()):
        self.model = model
        self.lookup_field = lookup_field
        self.related = tuple(related)
        self.prefetch = tuple(prefetch)

    @property
    def resource_name(self) -> str:
        return self.model._meta.verbose_name.title()

    def queryset(self) -> QuerySet:
        qs = self.model._default_manager.all()
        if self.related:
            qs = qs.select_related(*self.related)
        if self.prefetch:
            qs = qs.prefetch_related(*self.prefetch)
        return qs

    def _filtered(self, filters: Filters, qs: Optional[QuerySet] = None) -> QuerySet:
        qs = self.queryset() if qs is None else qs
        if filters is None:
            return qs
        if isinstance(filters, Q):
            return qs.filter(filters)
        return qs.filter(**filters)

    def find(self, filters: Filters = None, ordering: Optional[Sequence[str]] = None,
             offset: int = 0, limit: Optional[int] = None) -> List[M]:
        qs = self._filtered(filters)
        if ordering:
            qs = qs.order_by(*ordering)
        if limit is not None:
            qs = qs[offset:offset + limit]
        elif offset:
            qs = qs[offset:]
        return list(qs)

    def iterate(self, filters: Filters = None, ordering: Optional[Sequence[str]] = None) -> Iterable[M]:
        qs = self._filtered(filters)
        if ordering:
            qs = qs.order_by(*ordering)
        return qs.iterator(chunk_size=200)

    def find_by_id(self, identifier: Any) -> Optional[M]:
        if identifier in (None, ""):
            return None
        lookup = self.lookup_field
        if lookup != "pk" and str(identifier).isdigit():
            # Numeric identifiers resolve by primary key, others by the public number.
            return self._filtered(Q(pk=int(identifier)) | Q(**{lookup: str(identifier)})).first()
        try:
            return self._filtered({lookup: identifier}).first()
        except (ValueError, TypeError):
            return None

    def get(self, identifier: Any) -> M:
        instance = self.find_by_id(identifier)
        if instance is None:
            raise NotFound.for_resource(self.resource_name, identifier)
        return instance

    def find_one(self, filters: Filters) -> Optional[M]:
        return self._filtered(filters).first()

    def insert(self, **fields: Any) -> M:
        instance = self.model(**fields)
        instance.save()
        return instance

    def save(self, instance: M, update_fields: Optional[Sequence[str]] = None) -> M:
        if update_fields:
            fields = set(update_fields)
            if any(f.name == "updated_at" for f in self.model._meta.fields):
                fields.add("updated_at")
            instance.save(update_fields=sorted(fields))
        else:
            instance.save()
        return instance

    def update(self, identifier: Any, patch: Mapping[str, Any]) -> M:
        instance = self.get(identifier)
        for field_name, value in patch.items():
            setattr(instance, field_name, value)
        return self.save(instance)

    def delete(self, identifier: Any) -> bool:
        instance = self.find_by_id(identifier)
        if instance is None:
            return False
        instance.delete()
        return True

    def count(self, filters: Filters = None) -> int:
        return self._filtered(filters).count()

    def exists(self, filters: Filters = None) -> bool:
        return self._filtered(filters).exists()

    def aggregate(self, filters: Filters = None, group_by: Union[Sequence[str], Mapping[str, Any], None] = None,
                  **aggregations: Any) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
        """Run an aggregation, optionally grouped.

        ``group_by`` is either field names or a mapping of alias to expression
        (e.g. ``{"day": TruncDate("paid_date")}``). Without it a single dict is
        returned; with it, one dict per group ordered by the group keys.
        """
        qs = self._filtered(filters, self.model._default_manager.all()).order_by()
        if not group_by:
            return qs.aggregate(**aggregations)
        if isinstance(group_by, Mapping):
            qs = qs.annotate(**group_by)
            keys = list(group_by.keys())
        else:
            keys = list(group_by)
        return list(qs.values(*keys).annotate(**aggregations).order_by(*keys))
