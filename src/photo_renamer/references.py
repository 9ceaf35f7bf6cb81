"""Pick one reference photo per identified person for the title model."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from photo_renamer.pipeline import BatchItem


@dataclass(frozen=True)
class PersonReference:
    """The photo in which a person's matched face is largest."""

    person_name: str
    image_bytes: bytes
    source_item_id: str


def select_references(items: Sequence["BatchItem"]) -> list[PersonReference]:
    """
    Choose, for every matched person, the item where their face covers the largest area.

    Items without display bytes cannot serve as a reference and are skipped. Ties keep
    the earliest item. The result is sorted by person name.
    """
    best: dict[str, tuple[float, "BatchItem"]] = {}
    for item in items:
        if item.display_bytes is None:
            continue
        for face in item.detected_faces:
            if face.matched_name is None:
                continue
            area = face.bounding_box.area
            current = best.get(face.matched_name)
            if current is None or area > current[0]:
                best[face.matched_name] = (area, item)

    return [
        PersonReference(person_name=name, image_bytes=item.display_bytes, source_item_id=item.id)  # type: ignore[arg-type]
        for name, (_, item) in sorted(best.items())
    ]
