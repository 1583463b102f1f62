"""Source tag mirror."""

from conflux_builder.tags.models import TagRecord

__all__ = ["TagRecord"]
