"""Base model for records exchanged with callers and callbacks."""

from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    model_serializer,
    model_validator,
)


class WireModel(BaseModel):
    """Typed record with an open side-channel for pass-through keys.

    Known fields are declared on the subclass with snake_case names and
    their wire aliases. Any other key given to ``model_validate`` is kept in
    ``extras`` and flattened back into the payload on dump, so callers get
    back exactly the keys they sent.
    """

    model_config = ConfigDict(populate_by_name=True)

    # Legacy key -> field name, applied before validation.
    renamed_keys: ClassVar[dict[str, str]] = {}

    extras: dict[str, Any] = Field(
        default_factory=dict,
        description="Pass-through fields with no dedicated attribute",
    )

    @model_validator(mode="before")
    @classmethod
    def _collect_extras(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        known: set[str] = set()
        for name, field in cls.model_fields.items():
            known.add(name)
            if field.alias:
                known.add(field.alias)

        extras = dict(data.get("extras") or {})
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key == "extras":
                continue
            key = cls.renamed_keys.get(key, key) if key not in known else key
            if key in known:
                cleaned.setdefault(key, value)
            else:
                extras[key] = value
        cleaned["extras"] = extras
        return cleaned

    @model_serializer(mode="wrap")
    def _flatten_extras(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        extras = data.pop("extras", None) or {}
        for key, value in extras.items():
            data.setdefault(key, value)
        return data

    def payload(self) -> dict[str, Any]:
        """JSON-ready dict keyed by wire names."""
        return self.model_dump(mode="json", by_alias=True)

    def apply(self, **changes: Any) -> dict[str, Any]:
        """Set attributes and return the wire-keyed patch for just those fields."""
        for name, value in changes.items():
            setattr(self, name, value)
        return self.model_dump(mode="json", by_alias=True, include=set(changes))
