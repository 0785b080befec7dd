"""Source models: raw items harvested from the content source."""

from pydantic import BaseModel, ConfigDict


class RawItem(BaseModel):
    """A single short text item (a thread comment) as fetched from the source.

    ``record`` is the author's self-reported win-loss record when one could
    be found in the text (e.g. ``"10-5"``), otherwise None.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    text: str
    score: int = 0
    record: str | None = None


class TopicListing(BaseModel):
    """Everything the source returned for the current topic."""

    model_config = ConfigDict(frozen=True)

    title: str
    url: str = ""
    items: list[RawItem]
