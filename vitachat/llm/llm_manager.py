"""
统一 LLM 管理模块

功能：
- Provider 封装（OpenAI-compatible / Anthropic），requests.Session 复用连接
- OpenAI Responses API（web_search 工具）用于深度检索
- 结构化输出：Pydantic model_validate_json，失败自动重试一次
- HTTP 错误映射为类型化异常（限流 / 配置错误 / 其他）
- Raw JSON 落库（JSONL）+ 清理策略
- dry_run 模式

配置来源：config/vita_config.json 的 llm 段（可选 vita_config.local.json 覆盖）
"""

from __future__ import annotations

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import requests
from pydantic import BaseModel

from vitachat.llm.errors import (
    LLMConfigurationError,
    LLMError,
    LLMResponseError,
    error_for_status,
)
from vitachat.log import get_logger
from vitachat.observability.metrics import metrics

logger = get_logger(__name__)

# ============================================================
# Constants
# ============================================================

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT = 120  # seconds
LOG_DIR_NAME = "llm_raw"
LOG_MAX_AGE_DAYS = 10
LOG_MAX_TOTAL_MB = 100
MESSAGE_DIGEST_LENGTH = 200
RETRY_STATUS = (429, 500, 502, 503)
PLACEHOLDER_KEYS = ("", "sk-xxx", "sk-ant-xxx")

# 兼容常见的原生环境变量名
_LEGACY_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}


# ============================================================
# Dataclasses
# ============================================================

@dataclass
class ProviderConfig:
    name: str
    api_key: str
    base_url: str
    default_model: str
    models: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def is_anthropic(self) -> bool:
        return "anthropic.com" in self.base_url or self.name.startswith("claude")


@dataclass
class LLMConfig:
    default: str
    dry_run: bool
    scope_provider: str = ""
    research_provider: str = ""
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)


# ============================================================
# Helper Functions
# ============================================================

def mask_secret(secret: str, show_chars: int = 4) -> str:
    """脱敏显示密钥，例如 "sk-a...wxyz" """
    if not secret:
        return "(empty)"
    if len(secret) <= show_chars * 2 + 3:
        return "*" * len(secret)
    return f"{secret[:show_chars]}...{secret[-show_chars:]}"


def provider_env_var(provider_name: str) -> str:
    """VITA_LLM__{PROVIDER}__API_KEY，例如 openai-mini => VITA_LLM__OPENAI_MINI__API_KEY"""
    normalized = provider_name.upper().replace("-", "_")
    return f"VITA_LLM__{normalized}__API_KEY"


def resolve_api_key(provider_name: str, configured: str = "") -> str:
    """优先级：provider 级环境变量 > 原生环境变量（OPENAI_API_KEY 等）> 配置文件"""
    key = os.getenv(provider_env_var(provider_name))
    if not key:
        legacy = _LEGACY_ENV_KEYS.get(provider_name.split("-")[0])
        key = os.getenv(legacy) if legacy else None
    return key or configured or ""


def now_iso() -> str:
    return datetime.now().isoformat()


def messages_digest(messages: List[Dict[str, Any]], max_len: int = MESSAGE_DIGEST_LENGTH) -> str:
    """messages 摘要（用于日志，不含完整内容）"""
    parts = []
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            truncated = content[:max_len] + ("..." if len(content) > max_len else "")
            parts.append(f"[{msg.get('role', '?')}] {truncated}")
    return "\n".join(parts)


# ============================================================
# RawLogStore
# ============================================================

class RawLogStore:
    """
    原始 JSON 响应日志：按天写入 logs/llm_raw/YYYY-MM-DD.jsonl，
    超过 N 天或总大小超过 M MB 时从最旧文件开始删除。
    """

    def __init__(self, log_dir: Path | str | None = None):
        if log_dir is None:
            log_dir = Path(__file__).resolve().parents[2] / "logs" / LOG_DIR_NAME
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, record: Dict[str, Any]) -> None:
        record.setdefault("timestamp", now_iso())
        path = self.log_dir / f"{datetime.now().strftime('%Y-%m-%d')}.jsonl"
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with self._lock, open(path, "a", encoding="utf-8") as f:
            f.write(line)

    def cleanup(self, max_age_days: int = LOG_MAX_AGE_DAYS, max_total_mb: int = LOG_MAX_TOTAL_MB) -> Dict[str, Any]:
        report: Dict[str, Any] = {"deleted_by_age": [], "deleted_by_size": [], "remaining_mb": 0.0}
        if not self.log_dir.exists():
            return report
        files = sorted(self.log_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime)
        cutoff = datetime.now() - timedelta(days=max_age_days)
        remaining = []
        for f in files:
            if datetime.fromtimestamp(f.stat().st_mtime) < cutoff:
                report["deleted_by_age"].append(f.name)
                f.unlink()
            else:
                remaining.append(f)
        max_bytes = max_total_mb * 1024 * 1024
        while remaining and sum(f.stat().st_size for f in remaining) > max_bytes:
            oldest = remaining.pop(0)
            report["deleted_by_size"].append(oldest.name)
            oldest.unlink()
        report["remaining_mb"] = sum(f.stat().st_size for f in remaining) / (1024 * 1024)
        return report


# ============================================================
# Provider Classes
# ============================================================

def _llm_perf() -> tuple:
    from config.settings import settings
    p = settings.perf_llm
    return p.timeout_seconds or DEFAULT_TIMEOUT, p.max_retries or 0, p.retry_backoff or 1.5


def _request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    timeout: int,
    provider: str,
    **kwargs: Any,
) -> requests.Response:
    """带退避的请求；最终的 HTTP 错误转换为 LLMError 子类"""
    _, max_retries, backoff = _llm_perf()
    for attempt in range(max_retries + 1):
        try:
            resp = session.request(method, url, timeout=timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= max_retries:
                raise LLMError(f"{provider}: request failed: {e}", provider=provider) from e
            time.sleep(backoff ** attempt)
            continue
        if resp.status_code in RETRY_STATUS and attempt < max_retries:
            time.sleep(backoff ** attempt)
            continue
        if resp.status_code >= 400:
            raise error_for_status(
                resp.status_code,
                f"{provider}: HTTP {resp.status_code}: {resp.text[:500]}",
                provider=provider,
            )
        return resp
    raise LLMError(f"{provider}: request_with_retry exhausted", provider=provider)


class Provider(ABC):
    """Provider 基类：负责 HTTP 请求"""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._session = requests.Session()

    @abstractmethod
    def request(self, payload: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def _post(self, path: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: Optional[int]) -> Dict[str, Any]:
        default_timeout, _, _ = _llm_perf()
        url = f"{self.config.base_url.rstrip('/')}{path}"
        resp = _request_with_retry(
            self._session, "POST", url, int(timeout or default_timeout), self.config.name,
            headers=headers, json=payload,
        )
        try:
            return resp.json()
        except ValueError as e:
            raise LLMResponseError(f"{self.config.name}: non-JSON response body", provider=self.config.name) from e


class OpenAICompatProvider(Provider):
    """OpenAI 兼容协议：/chat/completions 与 /responses"""

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def request(self, payload: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._post("/chat/completions", self._headers(), payload, timeout)

    def respond(self, payload: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._post("/responses", self._headers(), payload, timeout)


class AnthropicProvider(Provider):
    """Anthropic Messages API"""

    def request(self, payload: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        return self._post("/v1/messages", headers, payload, timeout)


# ============================================================
# Response Normalization
# ============================================================

def normalize_response(raw: Dict[str, Any], is_anthropic: bool = False) -> Dict[str, Any]:
    """
    抽取 final_text / usage / refusal，兼容三种响应：
    - chat/completions: choices[0].message.content
    - responses: output[].content[] 中 type == "output_text"
    - anthropic messages: content[] 中 type == "text"
    """
    result: Dict[str, Any] = {"final_text": None, "usage": raw.get("usage"), "refusal": None}
    if is_anthropic:
        blocks = raw.get("content") or []
        texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
        # web_search 会穿插多段 text，JSON 结果在最后一段
        result["final_text"] = texts[-1] if texts else None
        result["refusal"] = raw.get("stop_reason") == "refusal" or None
        return result

    if "output" in raw:
        texts = []
        for item in raw.get("output") or []:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "output_text":
                    texts.append(part.get("text", ""))
                elif part.get("type") == "refusal":
                    result["refusal"] = True
        result["final_text"] = "".join(texts) if texts else raw.get("output_text")
        return result

    choices = raw.get("choices") or []
    if choices:
        message = choices[0].get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            result["final_text"] = content
        elif isinstance(content, list):
            result["final_text"] = "".join(
                b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
            ) or None
        if message.get("refusal"):
            result["refusal"] = True
    return result


def _strip_code_fence(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        s = s.split("\n", 1)[1] if "\n" in s else ""
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


# ============================================================
# Chat Clients
# ============================================================

class BaseChatClient(ABC):
    """Chat 客户端基类"""

    config: ProviderConfig

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        response_model: Optional[Type[BaseModel]] = None,
        web_search: bool = False,
        **overrides: Any,
    ) -> Dict[str, Any]:
        """
        发送消息并获取响应。

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": "..."}]
            model: 模型名或别名，覆盖 default_model
            response_model: Pydantic 模型；设置后启用 JSON 输出并写入 ``parsed_object``，
                            解析失败时追加错误说明重试一次，仍失败则 ``parsed_object`` 为 None
            web_search: 启用 provider 的 web 搜索工具（OpenAI 走 Responses API）

        Returns:
            {"provider", "model", "final_text", "parsed_object", "raw", "meta": {...}}
        """
        raise NotImplementedError

    def _resolve_model(self, model: Optional[str]) -> str:
        name = model or self.config.default_model
        return self.config.models.get(name, name)


class DryRunChatClient(BaseChatClient):
    """不实际调用 API；response_model 时尝试用其默认值构造空对象"""

    def __init__(self, config: ProviderConfig, log_store: Optional[RawLogStore] = None):
        self.config = config
        self.log_store = log_store

    def chat(self, messages, model=None, response_model=None, web_search=False, **overrides):
        resolved_model = self._resolve_model(model)
        text = f"[DRY_RUN] provider={self.config.name}, model={resolved_model}"
        result = {
            "provider": self.config.name,
            "model": resolved_model,
            "final_text": text,
            "parsed_object": None,
            "raw": {"dry_run": True, "messages_count": len(messages)},
            "meta": {"usage": None, "latency_ms": 0, "refusal": None},
        }
        if self.log_store:
            self.log_store.write({
                "provider": self.config.name,
                "model": resolved_model,
                "messages_digest": messages_digest(messages),
                "final_text": text,
                "dry_run": True,
            })
        return result


class HTTPChatClient(BaseChatClient):
    """
    HTTP 实际调用客户端。
    根据 provider 类型选择 OpenAI-compatible 或 Anthropic 协议；
    OpenAI + web_search 时改用 Responses API。
    """

    def __init__(
        self,
        config: ProviderConfig,
        provider: Provider,
        log_store: Optional[RawLogStore] = None,
        semaphore: Optional[threading.Semaphore] = None,
    ):
        self.config = config
        self.provider = provider
        self.log_store = log_store
        self._semaphore = semaphore

    def chat(self, messages, model=None, response_model=None, web_search=False, **overrides):
        resolved_model = self._resolve_model(model)
        timeout = overrides.pop("timeout_seconds", None)
        params = {**self.config.params, **overrides}
        is_anthropic = self.config.is_anthropic()
        use_responses = web_search and isinstance(self.provider, OpenAICompatProvider)

        payload = self._build_payload(messages, resolved_model, params, response_model, web_search, use_responses)
        start = time.time()
        raw = self._send(payload, timeout, use_responses, resolved_model, messages)
        normalized = normalize_response(raw, is_anthropic)
        final_text = normalized["final_text"] or ""

        result: Dict[str, Any] = {
            "provider": self.config.name,
            "model": resolved_model,
            "final_text": final_text,
            "parsed_object": None,
            "raw": raw,
            "meta": {
                "usage": normalized["usage"],
                "latency_ms": int((time.time() - start) * 1000),
                "refusal": normalized["refusal"],
            },
        }

        # ── Structured Output: Pydantic 解析 + 自动重试一次 ──
        if response_model is not None:
            try:
                result["parsed_object"] = response_model.model_validate_json(_strip_code_fence(final_text))
            except ValueError as val_err:
                retry_msgs = list(messages) + [
                    {"role": "assistant", "content": final_text},
                    {"role": "user", "content": (
                        "Your previous response could not be parsed as JSON. "
                        f"Validation error: {val_err}. "
                        "Please return ONLY valid JSON matching the required schema, with no markdown."
                    )},
                ]
                retry_payload = self._build_payload(
                    retry_msgs, resolved_model, params, response_model, web_search, use_responses
                )
                retry_raw = self._send(retry_payload, timeout, use_responses, resolved_model, retry_msgs)
                retry_text = normalize_response(retry_raw, is_anthropic)["final_text"] or ""
                result["final_text"] = retry_text
                result["raw"] = retry_raw
                try:
                    result["parsed_object"] = response_model.model_validate_json(_strip_code_fence(retry_text))
                except ValueError as retry_err:
                    logger.warning("Structured output retry failed (%s): %s", self.config.name, retry_err)
        return result

    def _send(
        self,
        payload: Dict[str, Any],
        timeout: Optional[int],
        use_responses: bool,
        resolved_model: str,
        messages: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        start = time.time()
        error = None
        raw: Dict[str, Any] = {}
        try:
            if self._semaphore:
                with self._semaphore:
                    raw = self._dispatch(payload, timeout, use_responses)
            else:
                raw = self._dispatch(payload, timeout, use_responses)
            return raw
        except LLMError as e:
            error = str(e)
            raise
        finally:
            latency = time.time() - start
            metrics.llm_requests_total.labels(provider=self.config.name, model=resolved_model).inc()
            metrics.llm_duration_seconds.labels(provider=self.config.name, model=resolved_model).observe(latency)
            if error:
                metrics.llm_errors_total.labels(provider=self.config.name, model=resolved_model).inc()
            if self.log_store:
                self.log_store.write({
                    "provider": self.config.name,
                    "model": resolved_model,
                    "endpoint": "responses" if use_responses else "chat",
                    "messages_digest": messages_digest(messages),
                    "raw_response": raw,
                    "latency_ms": int(latency * 1000),
                    "error": error,
                })

    def _dispatch(self, payload: Dict[str, Any], timeout: Optional[int], use_responses: bool) -> Dict[str, Any]:
        if use_responses:
            return self.provider.respond(payload, timeout=timeout)  # type: ignore[attr-defined]
        return self.provider.request(payload, timeout=timeout)

    def _build_payload(self, messages, model, params, response_model, web_search, use_responses) -> Dict[str, Any]:
        if use_responses:
            return self._build_responses_payload(messages, model, params, response_model)
        if self.config.is_anthropic():
            return self._build_anthropic_payload(messages, model, params, web_search)
        return self._build_openai_payload(messages, model, params, response_model)

    def _build_openai_payload(self, messages, model, params, response_model) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.get("role", "user"), "content": m.get("content") or ""} for m in messages],
        }
        payload.update(params)
        if response_model is not None:
            payload.setdefault("response_format", {"type": "json_object"})
        if "max_output_tokens" in payload:
            payload["max_tokens"] = payload.pop("max_output_tokens")
        if "max_tokens" in payload and "api.openai.com" in (self.config.base_url or ""):
            payload["max_completion_tokens"] = payload.pop("max_tokens")
        return payload

    def _build_responses_payload(self, messages, model, params, response_model) -> Dict[str, Any]:
        """OpenAI Responses API：system → instructions，其余 → input，附带 web_search 工具"""
        instructions = "\n\n".join(m.get("content") or "" for m in messages if m.get("role") == "system")
        payload: Dict[str, Any] = {
            "model": model,
            "input": [
                {"role": m.get("role", "user"), "content": m.get("content") or ""}
                for m in messages if m.get("role") != "system"
            ],
            "tools": [{"type": "web_search_preview"}],
        }
        if instructions:
            payload["instructions"] = instructions
        params = dict(params)
        max_tokens = params.pop("max_tokens", None)
        payload.update(params)
        if max_tokens and "max_output_tokens" not in payload:
            payload["max_output_tokens"] = max_tokens
        if response_model is not None:
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": response_model.__name__.lower(),
                    "schema": response_model.model_json_schema(),
                    "strict": False,
                }
            }
        return payload

    def _build_anthropic_payload(self, messages, model, params, web_search) -> Dict[str, Any]:
        system_parts = [m.get("content") or "" for m in messages if m.get("role") == "system"]
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": m.get("role"), "content": m.get("content") or ""}
                for m in messages if m.get("role") != "system"
            ],
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        payload.update(params)
        max_output = payload.pop("max_output_tokens", None)
        if payload.get("max_tokens") is None:
            payload["max_tokens"] = min(int(max_output), 64000) if max_output else 16384
        if web_search:
            payload["tools"] = [{"type": "web_search_20250305", "name": "web_search", "max_uses": 5}]
        return payload


# ============================================================
# LLMManager
# ============================================================

class LLMManager:
    """
    LLM 统一管理器：加载配置、按 provider 名创建 ChatClient、并发限流。
    """

    def __init__(self, config: LLMConfig, log_store: Optional[RawLogStore] = None):
        self.config = config
        self.log_store = log_store or RawLogStore()
        self._semaphores: Dict[str, threading.Semaphore] = {}
        self._sem_lock = threading.Lock()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], log_store: Optional[RawLogStore] = None) -> "LLMManager":
        section = raw.get("llm") or {}
        providers: Dict[str, ProviderConfig] = {}
        for name, pcfg in (section.get("providers") or {}).items():
            providers[name] = ProviderConfig(
                name=name,
                api_key=resolve_api_key(name, pcfg.get("api_key", "")),
                base_url=pcfg.get("base_url", ""),
                default_model=pcfg.get("default_model", ""),
                models=pcfg.get("models") or {},
                params=pcfg.get("params") or {},
            )
        default = os.getenv("VITA_LLM_DEFAULT") or section.get("default") or "openai"
        config = LLMConfig(
            default=default,
            dry_run=os.getenv("LLM_DRY_RUN", "").lower() == "true" or section.get("dry_run") is True,
            scope_provider=section.get("scope_provider") or default,
            research_provider=section.get("research_provider") or default,
            providers=providers,
        )
        return cls(config, log_store=log_store)

    @classmethod
    def from_settings(cls) -> "LLMManager":
        from config.settings import raw_config
        return cls.from_dict(raw_config())

    def get_provider_names(self) -> List[str]:
        return list(self.config.providers.keys())

    def is_available(self, provider: str) -> bool:
        pcfg = self.config.providers.get(provider)
        return bool(pcfg and pcfg.api_key not in PLACEHOLDER_KEYS)

    def get_client(self, provider: Optional[str] = None) -> BaseChatClient:
        provider_name = provider or self.config.default
        pcfg = self.config.providers.get(provider_name)
        if pcfg is None:
            raise LLMConfigurationError(
                f"Unknown provider: {provider_name}. Available: {self.get_provider_names()}",
                provider=provider_name,
            )

        if self.config.dry_run:
            return DryRunChatClient(pcfg, self.log_store)

        if pcfg.api_key in PLACEHOLDER_KEYS:
            raise LLMConfigurationError(
                f"Invalid or missing API key for provider '{provider_name}'. "
                f"Set {provider_env_var(provider_name)} or configure it in vita_config.local.json. "
                f"Current key: {mask_secret(pcfg.api_key)}",
                provider=provider_name,
            )

        http_provider: Provider = AnthropicProvider(pcfg) if pcfg.is_anthropic() else OpenAICompatProvider(pcfg)

        from config.settings import settings
        with self._sem_lock:
            if provider_name not in self._semaphores:
                self._semaphores[provider_name] = threading.Semaphore(
                    settings.perf_llm.max_concurrent_per_provider or 5
                )
            semaphore = self._semaphores[provider_name]

        return HTTPChatClient(pcfg, http_provider, self.log_store, semaphore=semaphore)

    def cleanup_logs(self, max_age_days: int = LOG_MAX_AGE_DAYS, max_total_mb: int = LOG_MAX_TOTAL_MB) -> Dict[str, Any]:
        return self.log_store.cleanup(max_age_days, max_total_mb)


# 全局单例（延迟初始化）
_manager: Optional[LLMManager] = None


def get_manager() -> LLMManager:
    global _manager
    if _manager is None:
        _manager = LLMManager.from_settings()
    return _manager
