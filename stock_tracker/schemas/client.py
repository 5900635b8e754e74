from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_id: int = Field(ge=0, lt=1 << 63)
    host_name: str = ""
    client_ip: str = ""
    client_version: str = ""
    added_at: datetime = Field(default_factory=_utcnow)


class ClientAdmission(BaseModel):
    host_name: str = ""
    client_ip: str = ""
    client_version: str = ""
