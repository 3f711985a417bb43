from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Maintenance Desk"
    environment: str = "dev"

    database_url: str = "sqlite:///./maintenance_desk.db"
    log_level: str = "INFO"

    # Base URL of the customer-facing frontend, used to build approval links
    frontend_url: str = "http://localhost:3000"

    # Outgoing mail
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_sender: str = "maintenance@example.com"

    # Log messages instead of delivering them
    notify_test_mode: bool = False
    webhook_timeout_sec: float = 10.0

    # Who hears about customer approvals/rejections
    operator_contact_email: str | None = None

    seed_demo_data: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
