"""
vitachat.log: 每个模块 ``logger = get_logger(__name__)``；
首次取 logger 时按 settings.logging 初始化 LogManager。
"""

from vitachat.log.log_manager import LogManager, cleanup_logs, get_logger, init_logging

__all__ = ["get_logger", "init_logging", "cleanup_logs", "LogManager"]
