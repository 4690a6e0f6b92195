"""Application settings.

Sources, highest priority first: init kwargs, ``LOCALCHAT_*`` environment
variables (``LOCALCHAT_LLM__MODEL=...``), ``.env``, then
``configs/app/base.yaml`` overlaid with ``configs/app/{APP_ENV}.yaml``.
Consumers read the plain dict ``settings``.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

ROOT = Path(__file__).resolve().parents[2]

load_dotenv(ROOT / ".env")
env = os.getenv("APP_ENV")
CONFIG_DIR = Path(os.getenv("LOCALCHAT_CONFIG_DIR", ROOT / "configs" / "app"))


def yaml_files(config_dir: Path = CONFIG_DIR, app_env: Optional[str] = env) -> List[Path]:
    files = [config_dir / "base.yaml"]
    if app_env:
        files.append(config_dir / f"{app_env}.yaml")
    return files


class ServerSection(BaseModel):
    name: str = "LocalChat API Server"
    version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 4000
    cors_origins: List[str] = ["http://localhost:3000"]


class LoggingSection(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class LLMSection(BaseModel):
    base_url: str = "http://localhost:11434/v1"
    model: str = "gemma3:1b"
    api_key: str = "ollama"
    temperature: float = 0.7
    retry: int = 0
    system_prompt: Optional[str] = None


class DatabaseSection(BaseModel):
    url: str = "sqlite:///./localchat.db"
    echo: bool = False


class ChatSection(BaseModel):
    default_title: str = "New Chat"
    title_max_length: int = 30


class StreamSection(BaseModel):
    header: str = "X-Stream-Id"
    message_header: str = "X-Message-Id"
    idle_timeout: Optional[float] = 120


class ClientSection(BaseModel):
    base_url: str = "http://localhost:4000"
    timeout: float = 10
    notification_ttl: float = 10


class AppSettings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=ROOT / ".env",
        env_prefix="LOCALCHAT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: ServerSection = ServerSection()
    logging: LoggingSection = LoggingSection()
    llm: LLMSection = LLMSection()
    database: DatabaseSection = DatabaseSection()
    chat: ChatSection = ChatSection()
    stream: StreamSection = StreamSection()
    client: ClientSection = ClientSection()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource
    ) -> tuple[PydanticBaseSettingsSource, ...]:

        # 환경별 파일은 base.yaml의 섹션을 통째로 덮어쓰고, 빠진 키는 기본값으로 채운다
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=yaml_files())

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings
        )


settings = AppSettings().model_dump()
