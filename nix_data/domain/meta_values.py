"""
Tagged representation of multi-shaped package metadata fields.

Fields such as ``meta.license``, ``meta.platforms``, ``meta.homepage`` and
``meta.maintainers`` appear upstream as a single value, a list of values, or a
list of lists. Each value may itself be a plain string or an attribute set
(e.g. ``{"spdxId": "MIT", "fullName": "MIT License"}``).

:class:`MetaValue` records which variant was seen so call sites can pick the
normalisation they need (:meth:`MetaValue.first` or :meth:`MetaValue.joined`)
instead of sniffing the raw JSON again.
"""
from __future__ import annotations

from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

MetaKind = Literal["none", "single", "list", "nested"]

# Keys tried, in order, when an attribute set has to be reduced to text.
TEXT_KEYS: Tuple[str, ...] = ("spdxId", "fullName", "shortName", "name", "github", "email", "url")


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        for key in TEXT_KEYS:
            text = value.get(key)
            if isinstance(text, str) and text:
                return text
        return None
    return None


class MetaValue(BaseModel):
    """A metadata field decoded into an explicit variant."""

    model_config = ConfigDict(frozen=True)

    kind: MetaKind = "none"
    groups: Tuple[Tuple[str, ...], ...] = Field(
        default=(),
        description="Decoded text values. single/list use one group, nested one group per inner list.",
    )

    @classmethod
    def decode(cls, raw: Any) -> "MetaValue":
        """
        Decode a raw JSON value, most specific variant first.

        Never raises: values that cannot be reduced to text are dropped and an
        entirely unusable field decodes to the ``none`` variant.
        """
        if raw is None:
            return cls()

        if isinstance(raw, list):
            if raw and all(isinstance(item, list) for item in raw):
                groups = tuple(
                    tuple(t for t in (_as_text(v) for v in inner) if t is not None)
                    for inner in raw
                )
                groups = tuple(g for g in groups if g)
                return cls(kind="nested", groups=groups) if groups else cls()

            values = tuple(t for t in (_as_text(v) for v in raw) if t is not None)
            return cls(kind="list", groups=(values,)) if values else cls()

        text = _as_text(raw)
        if text is None:
            return cls()
        return cls(kind="single", groups=((text,),))

    @property
    def is_empty(self) -> bool:
        return self.kind == "none"

    def values(self) -> List[str]:
        """All text values, flattened in order."""
        return [v for group in self.groups for v in group]

    def first(self) -> Optional[str]:
        values = self.values()
        return values[0] if values else None

    def joined(self, separator: str = ", ") -> Optional[str]:
        values = self.values()
        if not values:
            return None
        return separator.join(values)
