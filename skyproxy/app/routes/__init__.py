"""SkyProxy Routes Package.

- chat: OpenAI-compatible chat completions
- health: Health check and monitoring endpoints
- dashboard: Read-only provider and credential status
"""
from skyproxy.app.routes import chat, dashboard, health

__all__ = ["chat", "dashboard", "health"]
