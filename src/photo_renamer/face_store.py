"""
Known-face store: labeled face samples persisted as JSON plus JPEG crops.

Storage layout::

    <store_dir>/known_faces.json   list of KnownFaceSample records
    <store_dir>/face_crops/        one <uuid>.jpg crop per sample

A person may have many samples; only `person_name` is ever changed after a
sample is written. Scans read through `snapshot()`, so labels added while a
page is being reviewed only affect later scans.
"""

import os
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import cached_property
from pathlib import Path

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from photo_renamer.matching import MatchOutcome, MatchSettings, match

DEFAULT_STORE_DIR = Path(
    os.getenv("FACE_STORE_DIR", str(Path.home() / ".local" / "share" / "photo-renamer")),
).expanduser()
DB_FILENAME = "known_faces.json"
CROPS_DIRNAME = "face_crops"


class KnownFaceSample(BaseModel):
    """One labeled face: a person name bound to a feature vector and a stored crop."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    person_name: str
    feature_vector: list[float]
    crop_file: str | None = None
    date_added: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    sample_date: datetime | None = None

    @cached_property
    def vector(self) -> np.ndarray:
        return np.asarray(self.feature_vector, dtype=np.float32)


_SAMPLES = TypeAdapter(list[KnownFaceSample])


@dataclass(frozen=True)
class FaceSnapshot:
    """Read-only view of the store taken at one point in time."""

    samples: tuple[KnownFaceSample, ...] = field(default_factory=tuple)
    settings: MatchSettings = field(default_factory=MatchSettings)

    def match(self, query: np.ndarray, target_date: datetime | None = None) -> MatchOutcome:
        return match(query, self.samples, target_date, self.settings)

    def __len__(self) -> int:
        return len(self.samples)


class FeatureStore:
    """Persistent, single-writer store of known face samples."""

    def __init__(
        self,
        store_dir: Path | None = None,
        settings: MatchSettings | None = None,
    ) -> None:
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self.db_file = self.store_dir / DB_FILENAME
        self.crops_dir = self.store_dir / CROPS_DIRNAME
        self.settings = settings or MatchSettings()
        self._samples: list[KnownFaceSample] = []
        self._lock = threading.Lock()
        self._load()

    # Persistence

    def _load(self) -> None:
        if not self.db_file.exists():
            logger.debug("face_store_empty", path=str(self.db_file))
            return
        try:
            self._samples = _SAMPLES.validate_json(self.db_file.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.error("face_store_load_failed", path=str(self.db_file), error=str(exc))
            self._samples = []
            return
        logger.info("face_store_loaded", samples=len(self._samples), people=len(self.known_names()))

    def _save(self) -> None:
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.db_file.write_bytes(_SAMPLES.dump_json(self._samples, indent=2))

    # Queries

    @property
    def samples(self) -> tuple[KnownFaceSample, ...]:
        return tuple(self._samples)

    def snapshot(self) -> FaceSnapshot:
        """Freeze the current samples so concurrent lookups see a consistent store."""
        with self._lock:
            return FaceSnapshot(tuple(self._samples), self.settings)

    def match(self, query: np.ndarray, target_date: datetime | None = None) -> MatchOutcome:
        return self.snapshot().match(query, target_date)

    def known_names(self) -> list[str]:
        """All distinct person names, sorted."""
        return sorted({sample.person_name for sample in self._samples})

    def samples_for(self, name: str) -> list[KnownFaceSample]:
        return [sample for sample in self._samples if sample.person_name == name]

    def crop_path(self, sample: KnownFaceSample) -> Path | None:
        if sample.crop_file is None:
            return None
        return self.crops_dir / sample.crop_file

    # Mutations

    def label(
        self,
        name: str,
        feature_vector: Sequence[float] | np.ndarray,
        crop_bytes: bytes | None = None,
        sample_date: datetime | None = None,
    ) -> KnownFaceSample:
        """
        Append a new sample for `name`.

        Labeling is append-only: labeling the same face twice stores two samples.

        Raises:
            ValueError: If the name is blank or the vector length differs from stored samples.

        """
        name = name.strip()
        if not name:
            msg = "person name must not be empty"
            raise ValueError(msg)
        vector = [float(v) for v in np.asarray(feature_vector, dtype=np.float32).ravel()]

        with self._lock:
            if self._samples and len(self._samples[0].feature_vector) != len(vector):
                msg = (
                    f"feature vector has {len(vector)} values, "
                    f"store expects {len(self._samples[0].feature_vector)}"
                )
                raise ValueError(msg)

            crop_file = None
            if crop_bytes:
                crop_file = f"{uuid.uuid4().hex}.jpg"
                self.crops_dir.mkdir(parents=True, exist_ok=True)
                (self.crops_dir / crop_file).write_bytes(crop_bytes)

            sample = KnownFaceSample(
                person_name=name,
                feature_vector=vector,
                crop_file=crop_file,
                sample_date=sample_date,
            )
            self._samples.append(sample)
            self._save()

        logger.info("face_labeled", name=name, sample_id=sample.id, samples=len(self._samples))
        return sample

    def remove(self, sample_id: str) -> bool:
        """Delete one sample and its crop. Returns True if the sample existed."""
        with self._lock:
            index = next((i for i, s in enumerate(self._samples) if s.id == sample_id), None)
            if index is None:
                return False
            sample = self._samples.pop(index)
            if (crop := self.crop_path(sample)) is not None:
                crop.unlink(missing_ok=True)
            self._save()
        logger.info("face_sample_removed", sample_id=sample_id, name=sample.person_name)
        return True

    def rename_person(self, old_name: str, new_name: str) -> int:
        """Rename every sample of `old_name`. Returns the number of samples changed."""
        trimmed = new_name.strip()
        if not trimmed or trimmed == old_name:
            return 0
        with self._lock:
            changed = 0
            for i, sample in enumerate(self._samples):
                if sample.person_name == old_name:
                    self._samples[i] = sample.model_copy(update={"person_name": trimmed})
                    changed += 1
            if changed:
                self._save()
        logger.info("person_renamed", old=old_name, new=trimmed, samples=changed)
        return changed
