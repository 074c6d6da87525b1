from typing import Optional

from pydantic import BaseModel, Field, ValidationError

class SettingsSchema(BaseModel):
    db_path: str = "lifting.db"
    frequency_weight: float = Field(0.2, ge=0.0, le=1.0)
    csv_imported: bool = False
    log_level: str = "INFO"
    session_user_id: Optional[str] = None

def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
