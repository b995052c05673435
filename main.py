#!/usr/bin/env python3
"""
Development launcher for ViniCapture.

- Serves the control API with the configured host/port
- Ctrl-C stops any running encoder and exits cleanly
"""

import sys
import time

from vinicapture.config import get_cfg
from vinicapture.web_server import start_web_server_in_thread


def _start_dev_web_server():
    """Start the control API with the dev launcher defaults."""

    server_cfg = get_cfg().get("web_server", {})
    return start_web_server_in_thread(
        host=server_cfg.get("listen_host") or "127.0.0.1",
        port=int(server_cfg.get("listen_port") or 3000),
        access_log=True,
        log_level="DEBUG",
    )


def main():
    print("[dev] Running ViniCapture API (Ctrl-C to exit)")
    web_server = _start_dev_web_server()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        print("[dev] Stopping web_server ...")
        web_server.stop()
    print("[dev] Exiting dev mode")
    return 0


if __name__ == "__main__":
    sys.exit(main())
