from pydantic import BaseModel, ValidationError, field_validator


class SettingsSchema(BaseModel):
    timezone: str = "UTC"
    log_format: str = "text"
    log_level: str = "INFO"
    log_retention_days: int = 90
    cleanup_batch_size: int = 500
    jobs_enabled: dict[str, bool] = {}
    job_schedules: dict[str, str] = {}
    admin_api_key: str | None = None

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("log_retention_days", "cleanup_batch_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
