from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from upload_pipeline.core.exceptions import InvalidRequest
from upload_pipeline.db.models import EntityKind, FileKind, Project, ProjectOption, Record


@dataclass(frozen=True)
class EntityKindSpec:
    """Static description of one upload-bearing entity kind."""

    kind: EntityKind
    model: type
    # file kind -> entity column holding the denormalized final URL
    url_fields: Mapping[FileKind, str]
    required_file_kinds: frozenset[FileKind]

    @property
    def allowed_file_kinds(self) -> frozenset[FileKind]:
        return frozenset(self.url_fields)

    @property
    def all_url_fields(self) -> tuple[str, ...]:
        return tuple(self.url_fields.values())

    @property
    def required_url_fields(self) -> tuple[str, ...]:
        return tuple(self.url_fields[file_kind] for file_kind in sorted(self.required_file_kinds, key=lambda k: k.value))

    def url_field_for(self, file_kind: FileKind) -> str:
        try:
            return self.url_fields[file_kind]
        except KeyError:
            raise InvalidRequest(
                f"{self.kind.value} entities do not accept {file_kind.value} files",
                entity_kind=self.kind.value,
                file_kind=file_kind.value,
            ) from None

    def url_values(self, entity) -> dict[str, str | None]:
        return {field_name: getattr(entity, field_name) for field_name in self.all_url_fields}


ENTITY_KINDS: dict[EntityKind, EntityKindSpec] = {
    EntityKind.project: EntityKindSpec(
        kind=EntityKind.project,
        model=Project,
        url_fields={
            FileKind.context: "context_url",
            FileKind.heatmap: "heatmap_url",
        },
        required_file_kinds=frozenset({FileKind.context}),
    ),
    EntityKind.option: EntityKindSpec(
        kind=EntityKind.option,
        model=ProjectOption,
        url_fields={
            FileKind.model: "model_url",
        },
        required_file_kinds=frozenset({FileKind.model}),
    ),
    EntityKind.record: EntityKindSpec(
        kind=EntityKind.record,
        model=Record,
        url_fields={
            FileKind.processed_recording: "record_url",
            FileKind.raw_recording: "raw_url",
            FileKind.thumbnail: "thumbnail_url",
        },
        required_file_kinds=frozenset({FileKind.processed_recording}),
    ),
}


def spec_for(kind: EntityKind | str) -> EntityKindSpec:
    try:
        return ENTITY_KINDS[EntityKind(kind)]
    except ValueError:
        raise InvalidRequest(f"Unknown entity kind: {kind}", entity_kind=str(kind)) from None


def kind_of(entity) -> EntityKind:
    for spec in ENTITY_KINDS.values():
        if isinstance(entity, spec.model):
            return spec.kind
    raise TypeError(f"Not an upload-bearing entity: {type(entity).__name__}")


def ensure_file_kind_allowed(kind: EntityKind, file_kind: FileKind) -> None:
    spec_for(kind).url_field_for(file_kind)
