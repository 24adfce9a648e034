#!/usr/bin/env python3
"""
启动 Vita Chat API（HTTP + WebSocket）

用法:
  python scripts/run_api.py
  python scripts/run_api.py --port 3001 --host 0.0.0.0
  python scripts/run_api.py --reload      # 开发模式

会话、房间和检索结果都保存在进程内存中，因此只能以单 worker 运行。
"""

import argparse
import sys
from pathlib import Path

# 项目根目录加入 path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    from config.settings import settings
    parser = argparse.ArgumentParser(description="Run Vita Chat API")
    parser.add_argument("--host", default=settings.api.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.api.port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Enable reload (dev)")
    args = parser.parse_args()

    from vitachat.log import init_logging
    init_logging()
    settings.print_info()

    import uvicorn

    if args.reload:
        uvicorn.run("vitachat.api.server:app", host=args.host, port=args.port, reload=True)
    else:
        from vitachat.api.server import app
        uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
