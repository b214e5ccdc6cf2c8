#!/usr/bin/env python3
"""
Run the webhook and operator API locally with auto reload.

Graph and Pub/Sub must reach the webhooks through a tunnel pointing at this port; set
WEBHOOK_PUBLIC_BASE_URL to the tunnel URL so new subscriptions use it.
"""

import os

import uvicorn

if __name__ == "__main__":
    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("DATABASE_HOST", "postgresql://localhost:5432")
    os.environ.setdefault("DATABASE_NAME", "mailsync")
    port = int(os.environ.get("PORT", "8001"))
    os.environ.setdefault("WEBHOOK_PUBLIC_BASE_URL", f"http://localhost:{port}")

    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True, log_level="info")
