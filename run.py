# run.py
import json
import os
import subprocess
import time
import urllib.request
from typing import Optional

import uvicorn
from dotenv import load_dotenv

load_dotenv(override=True)

APP_PATH = "questbot.api:app"


def start_ngrok(port: int = 8000, hostname: Optional[str] = None) -> str:
    # Start ngrok in the background (requires the ngrok binary and an authtoken)
    cmd = ["ngrok", "http"]
    if hostname:
        cmd.extend(["--domain", hostname])
    cmd.append(str(port))
    print(f"[ngrok] launching command: {' '.join(cmd)}")
    subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.STDOUT)
    # Wait for ngrok to boot and publish its API
    for _ in range(40):
        try:
            with urllib.request.urlopen("http://127.0.0.1:4040/api/tunnels") as r:
                data = json.load(r)
            https = next(
                (t for t in data.get("tunnels", []) if t.get("public_url", "").startswith("https://")),
                None,
            )
            if https:
                return https["public_url"]
        except Exception:
            time.sleep(0.5)
    raise RuntimeError("ngrok did not start or no public tunnel found")


def run_server(port: int, reload: bool = True):
    """Start uvicorn, retrying without reload if the watcher lacks permission."""
    try:
        uvicorn.run(APP_PATH, host="0.0.0.0", port=port, reload=reload)
    except (PermissionError, OSError) as exc:
        if reload and getattr(exc, "errno", None) == 1:
            print("ℹ️  Reload watcher not permitted; restarting server without reload.")
            uvicorn.run(APP_PATH, host="0.0.0.0", port=port, reload=False)
        else:
            raise


if __name__ == "__main__":
    server_port = int(os.getenv("DEV_SERVER_PORT") or 8000)
    ngrok_domain = (os.getenv("NGROK_DOMAIN") or "").strip()
    if os.getenv("DISABLE_NGROK", "").strip().lower() in {"1", "true", "yes"}:
        print("ℹ️  Skipping ngrok startup because DISABLE_NGROK is set.")
    else:
        try:
            public_url = start_ngrok(server_port, hostname=ngrok_domain or None)
            print("🌍 ngrok public URL:", public_url)
            print("📌 Register the webhook with Telegram (setWebhook url=...):")
            print("    ", f"{public_url}/webhooks/telegram")
        except Exception as e:
            print("⚠️ Could not start ngrok or read URL:", e)

    reload_pref = os.getenv("UVICORN_RELOAD", "true").strip().lower() not in {"0", "false", "no"}
    run_server(server_port, reload=reload_pref)
