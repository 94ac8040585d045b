from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError


class SyncSettings(BaseModel):
    api_url: str = "http://localhost:8080/api"
    api_token: Optional[str] = None
    db_path: str = "kraftlog.db"
    storage: Literal["sqlite", "none"] = "sqlite"
    fallback_to_api: bool = False
    request_timeout: float = Field(10.0, gt=0)
    probe_timeout: float = Field(3.0, gt=0)
    batch_size: int = Field(50, ge=1)
    max_retries: int = Field(5, ge=0)


def validate_settings(data: dict) -> SyncSettings:
    try:
        return SyncSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
