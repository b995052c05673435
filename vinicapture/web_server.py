#!/usr/bin/env python3
"""
aiohttp web server for ViniCapture's capture control surface.

Endpoints:
  GET  /               -> Control UI
  GET  /api/status     -> JSON {running}
  POST /api/start      -> Start the encoder with the active profile
  POST /api/stop       -> Kill the encoder
  GET  /api/profiles   -> JSON array of encoder profiles
  POST /api/profiles   -> Replace the stored profiles with the posted array
  GET  /api/debug-vnc  -> JSON listing of running VNC server processes
  Static /static/*     -> UI assets
  GET  /healthz        -> "ok"
"""

import argparse
import asyncio
import logging
import re
import ssl
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

from . import webui
from .capture_controller import (
    CaptureAlreadyRunning,
    CaptureConfigError,
    CaptureController,
    CaptureLaunchError,
    CaptureNotRunning,
    build_controller,
)
from .config import get_cfg, reload_cfg
from .profile_store import ProfileFormatError, profiles_from_payload

# Start/stop and profile file I/O are short; a couple of workers is plenty.
WEB_SERVER_EXECUTOR_MAX_WORKERS = 2
PAGE_TITLE = "ViniCapture"
VNC_PROCESS_PATTERN = re.compile(r"kasmvnc|Xvnc")

CONTROLLER_KEY: AppKey[CaptureController] = web.AppKey("capture_controller", CaptureController)


def _error_response(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _list_processes() -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "ps",
            "aux",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", "ps not found"
    except OSError as exc:
        return 1, "", str(exc)

    stdout_raw, stderr_raw = await proc.communicate()
    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return proc.returncode, stdout, stderr


def build_app(controller: CaptureController | None = None) -> web.Application:
    log = logging.getLogger("web_server")
    cfg = get_cfg()
    if controller is None:
        controller = build_controller(cfg)
    store = controller.store

    middlewares: list[Any] = []

    if bool(cfg.get("web_server", {}).get("cors_enabled", True)):

        @web.middleware
        async def _cors_middleware(request: web.Request, handler):
            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                response = await handler(request)

            response.headers.setdefault("Access-Control-Allow-Origin", "*")
            response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
            response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
            response.headers.setdefault("Access-Control-Max-Age", "86400")
            return response

        middlewares.append(_cors_middleware)

    app = web.Application(middlewares=middlewares)
    app[CONTROLLER_KEY] = controller

    async def index(_: web.Request) -> web.Response:
        log.debug("GET /: serving control UI")
        html = webui.render_template("index.html", page_title=PAGE_TITLE)
        return web.Response(text=html, content_type="text/html")

    # --- Capture control ---
    async def capture_status(_: web.Request) -> web.Response:
        running = controller.is_running()
        log.debug("GET /api/status. Running: %s", running)
        return web.json_response({"running": running})

    async def capture_start(_: web.Request) -> web.Response:
        log.info("POST /api/start received")
        try:
            profile = await asyncio.to_thread(controller.start)
        except CaptureAlreadyRunning as exc:
            return _error_response(str(exc), 400)
        except (CaptureConfigError, CaptureLaunchError) as exc:
            return _error_response(str(exc), 500)
        log.info("Capture started with profile %r", profile.name)
        return web.json_response({"message": "Capture started"})

    async def capture_stop(_: web.Request) -> web.Response:
        log.info("POST /api/stop received")
        try:
            controller.stop()
        except CaptureNotRunning as exc:
            return _error_response(str(exc), 400)
        return web.json_response({"message": "Capture stopped"})

    # --- Profiles ---
    async def profiles_get(_: web.Request) -> web.Response:
        profiles = await asyncio.to_thread(store.load)
        return web.json_response([profile.to_dict() for profile in profiles])

    async def profiles_update(request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return _error_response("Invalid profiles data. Expected an array.", 400)
        try:
            profiles = profiles_from_payload(payload)
        except ProfileFormatError as exc:
            return _error_response(str(exc), 400)

        saved = await asyncio.to_thread(store.save, profiles)
        if not saved:
            return _error_response("Failed to save profiles to disk.", 500)
        return web.json_response({"message": "Profiles saved successfully"})

    # --- Diagnostics ---
    async def debug_vnc(_: web.Request) -> web.Response:
        log.info("GET /api/debug-vnc received; checking VNC process status")
        returncode, stdout, stderr = await _list_processes()
        if returncode != 0:
            log.warning("Process listing failed (%s): %s", returncode, stderr.strip())
            return web.json_response(
                {
                    "message": "Unable to list processes.",
                    "running": False,
                    "stderr": stderr,
                    "errorCode": returncode,
                }
            )
        processes = [
            line for line in stdout.splitlines() if line and VNC_PROCESS_PATTERN.search(line)
        ]
        if not processes:
            return web.json_response(
                {"message": "No running VNC processes found.", "running": False, "processes": []}
            )
        return web.json_response(
            {
                "message": "VNC process(es) appear to be running.",
                "running": True,
                "processes": processes,
            }
        )

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    async def _shutdown_controller(_: web.Application) -> None:
        await asyncio.to_thread(controller.shutdown)

    app.on_cleanup.append(_shutdown_controller)

    # Routes
    app.router.add_get("/", index)
    app.router.add_get("/api/status", capture_status)
    app.router.add_post("/api/start", capture_start)
    app.router.add_post("/api/stop", capture_stop)
    app.router.add_get("/api/profiles", profiles_get)
    app.router.add_post("/api/profiles", profiles_update)
    app.router.add_get("/api/debug-vnc", debug_vnc)
    app.router.add_static("/static/", webui.static_directory(), show_index=False)
    app.router.add_get("/healthz", healthz)
    return app


def configure_logging(log_level: str = "INFO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    if get_cfg().get("logging", {}).get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop):
        self.thread = thread
        self.loop = loop

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("web_server")
        log.info("Stopping web_server ...")
        # The server thread runs runner.cleanup() once its loop stops.
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        if self.thread.is_alive():
            log.warning("web_server thread did not exit within %.1fs", timeout)
        else:
            log.info("web_server stopped")


def start_web_server_in_thread(
    host: str = "127.0.0.1",
    port: int = 3000,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
    ssl_context: ssl.SSLContext | None = None,
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    configure_logging(log_level)
    log = logging.getLogger("web_server")

    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=WEB_SERVER_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="web_server_io",
    )
    runner_box = {}
    failure_box = {}

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        try:
            app = build_app()
            runner = web.AppRunner(
                app, access_log=logging.getLogger("aiohttp.access") if access_log else None
            )
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
            loop.run_until_complete(site.start())
        except Exception as exc:
            log.error("Unable to start web_server on %s:%s: %s", host, port, exc)
            failure_box["error"] = exc
            executor.shutdown(wait=False, cancel_futures=True)
            return
        runner_box["runner"] = runner
        log.info("ViniCapture API listening on http://%s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception:
                log.debug("Runner cleanup after loop exit failed", exc_info=True)
            executor.shutdown(wait=True, cancel_futures=True)

    t = threading.Thread(target=_run, name="web_server", daemon=True)
    t.start()

    while "runner" not in runner_box and "error" not in failure_box:
        time.sleep(0.05)
    if "error" in failure_box:
        raise RuntimeError(f"web_server failed to start: {failure_box['error']}")

    return WebServerHandle(t, loop)


def cli_main():
    parser = argparse.ArgumentParser(description="ViniCapture capture control API.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    configure_logging(args.log_level)
    log = logging.getLogger("web_server")

    server_cfg = cfg.get("web_server", {})
    bind_host = args.host if args.host else (server_cfg.get("listen_host") or "127.0.0.1")
    bind_port = args.port if args.port else int(server_cfg.get("listen_port") or 3000)
    log.info(
        "Starting web_server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        handle = start_web_server_in_thread(
            host=bind_host,
            port=bind_port,
            access_log=args.access_log,
            log_level=args.log_level,
        )
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
