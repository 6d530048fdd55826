"""Typed result payloads returned by the gateway.

These are thin mappings over the JSON the gateway returns inside
``result`` frames. Unknown fields are ignored so newer gateway versions
keep decoding.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, RootModel


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UnitSystem(_Lenient):
    length: str
    mass: str
    pressure: str | None = None
    temperature: str
    volume: str


class HassConfig(_Lenient):
    """Current gateway configuration (``get_config``)."""

    latitude: float
    longitude: float
    elevation: float = 0
    unit_system: UnitSystem | None = None
    location_name: str = ""
    time_zone: str = ""
    components: list[str] = Field(default_factory=list)
    config_dir: str = ""
    whitelist_external_dirs: list[str] = Field(default_factory=list)
    version: str = ""
    config_source: str = ""
    safe_mode: bool = False
    external_url: str | None = None
    internal_url: str | None = None


class HassArea(_Lenient):
    id: str = Field(alias="area_id")
    name: str
    aliases: list[str] = Field(default_factory=list)
    picture: str | None = None


class HassDevice(_Lenient):
    id: str
    name: str | None = None
    area_id: str | None = None
    config_entries: list[str] = Field(default_factory=list)
    configuration_url: str | None = None
    connections: list[tuple[str, str]] = Field(default_factory=list)
    disabled_by: str | None = None
    entry_type: str | None = None
    hw_version: str | None = None
    identifiers: list[tuple[str, str]] = Field(default_factory=list)
    manufacturer: str | None = None
    model: str | None = None
    name_by_user: str | None = None
    serial_number: str | None = None
    sw_version: str | None = None
    via_device_id: str | None = None


class Context(_Lenient):
    id: str
    parent_id: str | None = None
    user_id: str | None = None


class HassEntity(_Lenient):
    """Entity registry entry (``config/entity_registry/list``)."""

    entity_id: str
    id: str | None = None
    unique_id: str | None = None
    platform: str = ""
    area_id: str | None = None
    config_entry_id: str | None = None
    device_id: str | None = None
    disabled_by: str | None = None
    entity_category: str | None = None
    has_entity_name: bool = False
    hidden_by: str | None = None
    icon: str | None = None
    name: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    original_name: str | None = None
    translation_key: str | None = None


class HassEntityState(_Lenient):
    """Snapshot of one entity's state (``get_states``)."""

    entity_id: str
    state: str
    last_changed: str | None = None
    last_updated: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    context: Context | None = None

    @property
    def domain(self) -> str:
        return self.entity_id.split(".", 1)[0]


class HassServiceField(_Lenient):
    name: str | None = None
    description: str | None = None
    example: Any = None
    required: bool = False


class HassService(_Lenient):
    name: str | None = None
    description: str | None = None
    fields: dict[str, HassServiceField] = Field(default_factory=dict)


class HassServices(RootModel[dict[str, dict[str, HassService]]]):
    """Service catalog keyed by domain, then by service name."""

    def domains(self) -> list[str]:
        return sorted(self.root)

    def get(self, domain: str) -> dict[str, HassService]:
        return self.root.get(domain, {})


class HassPanel(_Lenient):
    component_name: str
    icon: str | None = None
    title: str | None = None
    config: dict[str, Any] | None = None
    url_path: str
    require_admin: bool = False
    config_panel_domain: str | None = None


class HassPanels(RootModel[dict[str, HassPanel]]):
    """Registered panels keyed by URL path."""


class EventData(_Lenient):
    entity_id: str | None = None
    new_state: HassEntityState | None = None
    old_state: HassEntityState | None = None


class HassEvent(_Lenient):
    """Event payload delivered for a subscription (state_changed shape)."""

    event_type: str
    data: EventData = Field(default_factory=EventData)
    time_fired: str | None = None
    origin: str | None = None
    context: Context | None = None

    def __str__(self) -> str:
        entity = self.data.entity_id or "-"
        old = self.data.old_state.state if self.data.old_state else None
        new = self.data.new_state.state if self.data.new_state else None
        return f"{self.event_type} {entity}: {old} -> {new} ({self.time_fired})"
