"""
Services module for the Competitor Intelligence Pipeline.

Provides the external collaborators the pipeline steps depend on:
    - SearchProvider: web search (Tavily, Brave)
    - AIProvider: LLM analysis (Claude, Ollama)
    - NotificationSender: price-drop alerts (SMTP, log)
    - EntityStore: catalog lookup
"""

from competitor_intel.services.entity_service import EntityStore, InMemoryEntityStore
from competitor_intel.services.llm_service import (
    AIProvider,
    AIResponse,
    ClaudeProvider,
    OllamaProvider,
    TokenUsage,
    create_ai_provider,
)
from competitor_intel.services.notification_service import (
    LogNotificationSender,
    NotificationSender,
    SmtpNotificationSender,
    create_notification_sender,
)
from competitor_intel.services.search_service import (
    BraveProvider,
    SearchProvider,
    SearchResults,
    TavilyProvider,
    create_search_provider,
)

__all__ = [
    # Catalog
    "EntityStore",
    "InMemoryEntityStore",
    # Search
    "SearchProvider",
    "SearchResults",
    "TavilyProvider",
    "BraveProvider",
    "create_search_provider",
    # AI
    "AIProvider",
    "AIResponse",
    "ClaudeProvider",
    "OllamaProvider",
    "TokenUsage",
    "create_ai_provider",
    # Notifications
    "NotificationSender",
    "LogNotificationSender",
    "SmtpNotificationSender",
    "create_notification_sender",
]
