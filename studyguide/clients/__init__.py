from studyguide.clients.groq_client import GroqClient
from studyguide.clients.youtube_client import YouTubeClient

__all__ = ["GroqClient", "YouTubeClient"]
