"""
统一配置模块
- 配置文件: config/vita_config.json（可调参数）
- 本地覆盖: config/vita_config.local.json（本地私密配置，如 secret_key / API Key）
- 环境变量优先覆盖敏感项
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent / "vita_config.json"
_LOCAL_CONFIG_PATH = Path(__file__).parent / "vita_config.local.json"

DEFAULT_SECRET_KEY = "change-me-in-local"


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_RAW_CONFIG: Dict[str, Any] = _load_json(_CONFIG_PATH)
if _LOCAL_CONFIG_PATH.exists():
    _RAW_CONFIG = _deep_merge(_RAW_CONFIG, _load_json(_LOCAL_CONFIG_PATH))


def _section(name: str) -> Dict[str, Any]:
    return (_RAW_CONFIG.get(name) or {})


def raw_config() -> Dict[str, Any]:
    """合并后的原始配置（只读用途，例如 LLMManager.from_dict）"""
    return _RAW_CONFIG


@dataclass
class ApiSettings:
    """API 服务配置"""
    host: str = os.getenv("API_HOST", "127.0.0.1")
    port: int = int(os.getenv("API_PORT", "3001"))
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit: str = "100/15minutes"
    rate_limit_enabled: bool = True


@dataclass
class AuthSettings:
    """认证配置：JWT 签名密钥、token 有效期、bcrypt 轮数（敏感项放 .local.json）"""
    secret_key: str = DEFAULT_SECRET_KEY
    token_expire_hours: float = 24.0
    bcrypt_rounds: int = 12


@dataclass
class RealtimeSettings:
    """WebSocket 房间与轮询参数"""
    ws_path: str = "/ws"
    room_grace_seconds: float = 5.0
    room_idle_seconds: float = 24 * 3600
    room_sweep_interval_seconds: float = 30 * 60
    close_delay_seconds: float = 0.1
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 300
    max_message_chars: int = 10000


@dataclass
class ResearchSettings:
    """深度检索：对话窗口、引用校验、结果保留"""
    window_size: int = 5
    validation_timeout_seconds: float = 10.0
    min_content_chars: int = 4000
    user_agent: str = "Mozilla/5.0 (compatible; ResearchBot/1.0)"
    retention_seconds: float = 30 * 60
    sweep_interval_seconds: float = 30 * 60
    max_output_tokens: int = 90000


@dataclass
class LLMPerfSettings:
    """LLM：超时、重试、并发限流"""
    timeout_seconds: int = 120
    research_timeout_seconds: int = 600
    max_retries: int = 2
    retry_backoff: float = 1.5
    max_concurrent_per_provider: int = 5


@dataclass
class DatabaseSettings:
    url: str = "sqlite:///data/vita.db"


@dataclass
class PathSettings:
    base: Path = field(default_factory=lambda: Path(__file__).parent.parent)

    @property
    def data(self) -> Path:
        return self.base / "data"

    @property
    def logs(self) -> Path:
        return self.base / "logs"

    def ensure_dirs(self):
        for p in [self.data, self.logs]:
            p.mkdir(parents=True, exist_ok=True)


class Settings:
    def __init__(self):
        self.env = os.getenv("VITA_ENV", "dev")

        a = _section("api")
        origins = a.get("cors_origins") or ["*"]
        if isinstance(origins, str):
            origins = [x.strip() for x in origins.split(",") if x.strip()]
        self.api = ApiSettings(
            host=str(a.get("host", os.getenv("API_HOST", "127.0.0.1"))),
            port=int(os.getenv("API_PORT") or a.get("port", 3001)),
            cors_origins=origins,
            rate_limit=str(a.get("rate_limit", "100/15minutes")),
            rate_limit_enabled=bool(a.get("rate_limit_enabled", True)),
        )

        au = _section("auth")
        self.auth = AuthSettings(
            secret_key=os.getenv("JWT_SECRET") or str(au.get("secret_key", DEFAULT_SECRET_KEY)),
            token_expire_hours=float(au.get("token_expire_hours", 24)),
            bcrypt_rounds=int(au.get("bcrypt_rounds", 12)),
        )

        rt = _section("realtime")
        self.realtime = RealtimeSettings(
            ws_path=str(rt.get("ws_path", "/ws")),
            room_grace_seconds=float(rt.get("room_grace_seconds", 5)),
            room_idle_seconds=float(rt.get("room_idle_seconds", 24 * 3600)),
            room_sweep_interval_seconds=float(rt.get("room_sweep_interval_seconds", 30 * 60)),
            close_delay_seconds=float(rt.get("close_delay_seconds", 0.1)),
            poll_interval_seconds=float(rt.get("poll_interval_seconds", 2)),
            poll_max_attempts=int(rt.get("poll_max_attempts", 300)),
            max_message_chars=int(rt.get("max_message_chars", 10000)),
        )

        rs = _section("research")
        self.research = ResearchSettings(
            window_size=int(rs.get("window_size", 5)),
            validation_timeout_seconds=float(rs.get("validation_timeout_seconds", 10)),
            min_content_chars=int(rs.get("min_content_chars", 4000)),
            user_agent=str(rs.get("user_agent", "Mozilla/5.0 (compatible; ResearchBot/1.0)")),
            retention_seconds=float(rs.get("retention_seconds", 30 * 60)),
            sweep_interval_seconds=float(rs.get("sweep_interval_seconds", 30 * 60)),
            max_output_tokens=int(rs.get("max_output_tokens", 90000)),
        )

        lp = (_section("performance").get("llm") or {})
        self.perf_llm = LLMPerfSettings(
            timeout_seconds=int(lp.get("timeout_seconds", 120)),
            research_timeout_seconds=int(lp.get("research_timeout_seconds", 600)),
            max_retries=int(lp.get("max_retries", 2)),
            retry_backoff=float(lp.get("retry_backoff", 1.5)),
            max_concurrent_per_provider=int(lp.get("max_concurrent_per_provider", 5)),
        )

        db = _section("database")
        self.database = DatabaseSettings(
            url=os.getenv("VITA_DATABASE_URL") or str(db.get("url", "sqlite:///data/vita.db")),
        )

        self.logging: Dict[str, Any] = dict(_section("logging"))
        if os.getenv("VITA_LOG_LEVEL"):
            self.logging["level"] = os.getenv("VITA_LOG_LEVEL")

        self.path = PathSettings()

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"

    @property
    def uses_default_secret(self) -> bool:
        return self.auth.secret_key == DEFAULT_SECRET_KEY

    def print_info(self):
        print(f"""
========================================
  Vita Chat Backend
========================================
  环境: {self.env}
  API: {self.api.host}:{self.api.port}
  WebSocket: {self.realtime.ws_path}
  数据库: {self.database.url}
========================================
        """)


# 全局单例
settings = Settings()
