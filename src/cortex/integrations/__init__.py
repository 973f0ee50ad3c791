"""HTTP collaborators: Ollama language model and webhook notifications."""

from cortex.integrations.ollama import OllamaClient
from cortex.integrations.webhook import WebhookNotifier

__all__ = ["OllamaClient", "WebhookNotifier"]
