"""
日志管理模块：控制台 + 按运行实例命名的文件日志，按大小/天数自动清理。
配置来源：config/vita_config.json 的 logging 段（经 config.settings 合并 local 覆盖与 VITA_LOG_LEVEL）。
"""
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

DEFAULT_LEVEL = "INFO"
DEFAULT_MAX_SIZE_MB = 100
DEFAULT_MAX_AGE_DAYS = 30
DEFAULT_MIN_KEEP_MB = 20
LOG_DIR_NAME = "app"
LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | %(message)s"


class LogManager:
    """
    统一日志管理：具名 logger 共享同一个运行日志文件，
    清理策略：总量低于 min_keep_mb 不删；先删超龄文件，再从最旧开始删到 max_size_mb 以内。
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        base = Path(__file__).resolve().parents[2]
        self.log_dir = Path(config["log_dir"]) if config.get("log_dir") else base / "logs" / LOG_DIR_NAME
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.max_size_mb = int(config.get("max_size_mb", DEFAULT_MAX_SIZE_MB))
        self.max_age_days = int(config.get("max_age_days", DEFAULT_MAX_AGE_DAYS))
        self.min_keep_mb = int(config.get("min_keep_mb", DEFAULT_MIN_KEEP_MB))
        self.console_output = bool(config.get("console_output", True))
        self.file_output = bool(config.get("file_output", True))
        self.level = getattr(logging, str(config.get("level") or DEFAULT_LEVEL).upper(), logging.INFO)

        self._run_log_path: Path | None = None
        self._formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    @property
    def run_file(self) -> Path:
        """当前进程的日志文件（按启动时间命名）"""
        if self._run_log_path is None:
            self._run_log_path = self.log_dir / datetime.now().strftime("%Y-%m-%d_%H-%M-%S.log")
        return self._run_log_path

    def get_logger(self, name: str) -> logging.Logger:
        logger = logging.getLogger(name)
        if logger.handlers:
            return logger

        logger.setLevel(self.level)
        logger.propagate = False

        if self.console_output:
            ch = logging.StreamHandler()
            ch.setLevel(self.level)
            ch.setFormatter(self._formatter)
            logger.addHandler(ch)

        if self.file_output:
            fh = logging.FileHandler(self.run_file, encoding="utf-8")
            fh.setLevel(self.level)
            fh.setFormatter(self._formatter)
            logger.addHandler(fh)

        return logger

    def cleanup(self) -> dict[str, Any]:
        report: dict[str, Any] = {"deleted_by_age": [], "deleted_by_size": [], "remaining_mb": 0.0}
        if not self.log_dir.exists():
            return report

        # 当前运行文件永不删除
        current = self._run_log_path
        log_files = sorted(
            (f for f in self.log_dir.glob("*.log") if f.is_file() and f != current),
            key=lambda p: p.stat().st_mtime,
        )
        total = sum(f.stat().st_size for f in log_files)
        if total < self.min_keep_mb * 1024 * 1024:
            report["remaining_mb"] = total / (1024 * 1024)
            return report

        cutoff = datetime.now() - timedelta(days=self.max_age_days)
        remaining: list[Path] = []
        for f in log_files:
            if datetime.fromtimestamp(f.stat().st_mtime) < cutoff:
                report["deleted_by_age"].append(f.name)
                f.unlink()
            else:
                remaining.append(f)

        max_bytes = self.max_size_mb * 1024 * 1024
        while remaining and sum(f.stat().st_size for f in remaining) > max_bytes:
            oldest = remaining.pop(0)
            report["deleted_by_size"].append(oldest.name)
            oldest.unlink()

        report["remaining_mb"] = sum(f.stat().st_size for f in remaining) / (1024 * 1024)
        return report


_manager: LogManager | None = None


def init_logging(config: dict[str, Any] | None = None) -> LogManager:
    """初始化全局 LogManager；未传 config 时使用 settings.logging"""
    global _manager
    if config is None:
        from config.settings import settings
        config = settings.logging
    _manager = LogManager(config)
    return _manager


def get_logger(name: str) -> logging.Logger:
    """获取具名 logger，首次调用时按 settings.logging 初始化"""
    if _manager is None:
        init_logging()
    return _manager.get_logger(name)


def cleanup_logs() -> dict[str, Any]:
    if _manager is None:
        init_logging()
    return _manager.cleanup()
