"""Integration definition models."""
from pydantic import BaseModel, Field, SecretStr, model_validator
from typing import Any, Literal
from enum import Enum
import uuid


class Provider(str, Enum):
    """Supported IoT hub providers."""
    IOT_HUB = "iot-hub"
    IOT_CORE = "iot-core"


class Credentials(BaseModel):
    """Credentials for an IoT hub.

    ``sas`` credentials carry a connection string; ``aws`` credentials
    carry an access key pair, a region and the device policy to attach.
    """
    type: Literal["sas", "aws"]
    connection_string: SecretStr | None = None
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    region: str | None = None
    device_policy_name: str | None = None

    @model_validator(mode="after")
    def check_required(self) -> "Credentials":
        if self.type == "sas" and not self.connection_string:
            raise ValueError("sas credentials require a connection_string")
        if self.type == "aws":
            missing = [
                name for name in ("access_key_id", "secret_access_key", "region")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"aws credentials require {', '.join(missing)}")
        return self


class SyncPolicy(BaseModel):
    """Which device fields flow in which direction.

    Desired fields are owned locally and pushed to the shadow. Reported
    fields are owned by the backend and only ever read from it.
    """
    desired_fields: list[str] = Field(
        default_factory=list,
        description="Attributes pushed to the shadow (empty = all attributes not listed as reported)"
    )
    reported_fields: list[str] = Field(
        default_factory=list,
        description="Reported keys tracked for drift (empty = all reported keys)"
    )
    status_field: str = Field(default="status", description="Reported key holding connectivity status")

    @model_validator(mode="after")
    def check_disjoint(self) -> "SyncPolicy":
        overlap = set(self.desired_fields) & set(self.reported_fields)
        if overlap:
            raise ValueError(f"fields cannot be both desired and reported: {sorted(overlap)}")
        return self

    def split_attributes(self, attributes: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """
        Split local attributes into the desired state to push and the
        names of attributes that must not be pushed.
        """
        desired: dict[str, Any] = {}
        rejected: list[str] = []
        for name, value in attributes.items():
            if name in self.reported_fields or name == self.status_field:
                rejected.append(name)
            elif self.desired_fields and name not in self.desired_fields:
                rejected.append(name)
            else:
                desired[name] = value
        return desired, rejected

    def tracked_reported(self, *states: dict[str, Any]) -> list[str]:
        """Reported keys compared for drift across the given states."""
        if self.reported_fields:
            return list(dict.fromkeys([*self.reported_fields, self.status_field]))
        keys: dict[str, None] = {}
        for state in states:
            keys.update(dict.fromkeys(state))
        return list(keys)


class Integration(BaseModel):
    """A tenant's connection to one IoT hub provider."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str | None = None
    provider: Provider
    credentials: Credentials
    policy: SyncPolicy = Field(default_factory=SyncPolicy)
