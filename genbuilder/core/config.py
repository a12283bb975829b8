from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_name: str = "genbuilder"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    database_url: str = "sqlite:///./genbuilder.db"

    workspaces_dir: str = "/data/apps"
    playbook_dir: str = "playbook"

    # Code-generation agent CLI
    agent_command: list[str] = ["npx", "--yes", "@anthropic-ai/claude-code"]
    agent_model: str = "sonnet"
    anthropic_api_key: str | None = None
    stage_marker_tag: str = "GO4IT"

    # Persistence
    store_retry_attempts: int = 5
    store_retry_delay: float = 1.0
    write_queue_size: int = 1000

    # Diagnostics
    output_tail_chars: int = 2000
    error_max_chars: int = 1000
    cancel_grace: float = 3.0
    shutdown_grace: float = 10.0

    # Workspace preparation
    install_incremental_timeout: float = 60.0
    install_full_timeout: float = 120.0
    schema_sync_timeout: float = 30.0
    seed_timeout: float = 30.0
    local_database_url: str = "file:./dev.db"

    # Build validation after a successful run
    build_validation: bool = True
    build_timeout: float = 300.0
    auto_fix_timeout: float = 900.0
    max_auto_fix_attempts: int = 2

    # Preview dev server
    preview_port: int = 4001
    preview_url_template: str = "http://localhost:{port}"
    preview_command: list[str] = ["npx", "next", "dev", "-p", "{port}"]
    preview_ready_timeout: float = 30.0
    preview_stop_grace: float = 5.0
    preview_auth_secret: str = "preview-secret-key"
    preview_env_blocklist: list[str] = [
        "ANTHROPIC_API_KEY",
        "AUTH_SECRET",
        "AUTH_URL",
        "BUILDER_API_KEY",
        "BUILDER_URL",
        "DATABASE_URL",
        "FLY_API_TOKEN",
        "NEXTAUTH_SECRET",
        "NEXTAUTH_URL",
        "NODE_ENV",
        "PORT",
        "TURSO_AUTH_TOKEN",
    ]
    preview_env_blocked_prefixes: list[str] = ["VERCEL_", "FLY_", "TURSO_", "STRIPE_", "RESEND_"]

settings = Settings()
