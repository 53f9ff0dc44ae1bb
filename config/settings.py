from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── LLM Provider ─────────────────────────────────────────────────────────
    # Options: "openai" (default) or "bedrock"
    llm_provider: str = "openai"

    # ── OpenAI ───────────────────────────────────────────────────────────────
    openai_api_key: str = ""
    openai_model_id: str = "gpt-4o"
    openai_max_tokens: int = 4096
    openai_temperature: float = 0.7

    # ── AWS Bedrock ──────────────────────────────────────────────────────────
    aws_default_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_profile: str = ""
    bedrock_model_id: str = "anthropic.claude-3-5-sonnet-20241022-v2:0"
    bedrock_max_tokens: int = 4096
    bedrock_temperature: float = 0.7

    # ── Image rendering (always OpenAI) ──────────────────────────────────────
    openai_image_model: str = "dall-e-3"
    openai_image_size: str = "1024x1024"
    openai_image_quality: str = "standard"
    openai_image_style: str = "natural"

    # ── Slack ────────────────────────────────────────────────────────────────
    slack_bot_token: str = ""
    slack_app_token: str = ""
    slack_log_level: str = "INFO"

    # ── Jira ─────────────────────────────────────────────────────────────────
    jira_url: str = ""                 # e.g. https://your-org.atlassian.net
    jira_username: str = ""
    jira_api_token: str = ""

    # ── Confluence ───────────────────────────────────────────────────────────
    confluence_url: str = ""           # e.g. https://your-org.atlassian.net/wiki
    confluence_username: str = ""
    confluence_api_token: str = ""
    confluence_space_key: str = "KB"
    confluence_parent_page_id: str = ""
    confluence_update_existing: bool = False

    # ── HTTP ─────────────────────────────────────────────────────────────────
    http_timeout_seconds: float = 30.0

    # ── Workflow behaviour ───────────────────────────────────────────────────
    image_pacing_seconds: float = 1.0
    conversation_grace_seconds: int = 60
    store_sweep_interval_seconds: int = 30
    # Options: "refine" (default), "replace" or "merge"
    feedback_strategy: str = Field(default="refine", pattern="^(refine|replace|merge)$")

    # ── Logging ──────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    activity_log_path: str = "logs/activity.jsonl"
    llm_log_path: str = "logs/llm_calls.jsonl"

    # ── Development ──────────────────────────────────────────────────────────
    dry_run: bool = False

    # ── Derived helpers ──────────────────────────────────────────────────────
    @property
    def llm_model_id(self) -> str:
        if self.llm_provider.lower().strip() == "bedrock":
            return self.bedrock_model_id
        return self.openai_model_id

    @property
    def llm_temperature(self) -> float:
        if self.llm_provider.lower().strip() == "bedrock":
            return self.bedrock_temperature
        return self.openai_temperature

    @property
    def llm_max_tokens(self) -> int:
        if self.llm_provider.lower().strip() == "bedrock":
            return self.bedrock_max_tokens
        return self.openai_max_tokens

    @property
    def confluence_user(self) -> str:
        """Confluence usually shares the Atlassian account with Jira."""
        return self.confluence_username or self.jira_username

    @property
    def confluence_token(self) -> str:
        return self.confluence_api_token or self.jira_api_token

    def missing_required(self) -> list[str]:
        required = {
            "SLACK_BOT_TOKEN": self.slack_bot_token,
            "SLACK_APP_TOKEN": self.slack_app_token,
            "JIRA_URL": self.jira_url,
            "JIRA_USERNAME": self.jira_username,
            "JIRA_API_TOKEN": self.jira_api_token,
            "CONFLUENCE_URL": self.confluence_url,
            "CONFLUENCE_SPACE_KEY": self.confluence_space_key,
            "OPENAI_API_KEY": self.openai_api_key,
        }
        return [name for name, value in required.items() if not value]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
