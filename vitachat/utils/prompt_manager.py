"""
Prompt 模板：vitachat/prompts/*.txt，进程内缓存，str.format 渲染。

模板里的 JSON 花括号写作 ``{{`` / ``}}``。
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "prompts"


class PromptManager:
    """进程级单例；研究提示词、范围判断提示词、地区提示都从这里取。

    Usage::

        pm = PromptManager()
        hint = pm.render("location_hint.txt", location="Chicago, IL")
    """

    _instance: PromptManager | None = None
    _lock = threading.Lock()

    def __new__(cls) -> "PromptManager":
        with cls._lock:
            if cls._instance is None:
                inst = super().__new__(cls)
                inst._templates = {}
                inst._dir = PROMPTS_DIR
                cls._instance = inst
        return cls._instance

    _templates: Dict[str, str]
    _dir: Path

    def template(self, name: str) -> str:
        text = self._templates.get(name)
        if text is None:
            path = self._dir / name
            if not path.is_file():
                raise FileNotFoundError(f"prompt template not found: {name} (in {self._dir})")
            text = path.read_text(encoding="utf-8")
            self._templates[name] = text
        return text

    def render(self, template_name: str, **kwargs: object) -> str:
        try:
            return self.template(template_name).format(**kwargs)
        except KeyError as e:
            raise KeyError(f"prompt {template_name} is missing variable {e.args[0]!r}") from None

    def names(self) -> List[str]:
        return sorted(p.name for p in self._dir.glob("*.txt"))

    def invalidate(self, template_name: str | None = None) -> None:
        if template_name is None:
            self._templates.clear()
        else:
            self._templates.pop(template_name, None)
