# src/read_service/processors/social_media_processor.py

"""
Social media posts that may be related to an incident.

A post is related when it was posted within 30 minutes before or after the
incident and mentions one of the incident's keywords (type, city, ...).

The posts come from a live search service when one is configured; when that
service is rate limited, rejects the request or cannot be reached, the
built-in mock dataset is used instead.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

# How far around the incident time posts are considered
LINK_WINDOW = timedelta(minutes=30)

# Status codes of the live service that make us fall back to the mock data
FALLBACK_STATUS_CODES = (400, 429)


@dataclass
class SocialMediaPost:
    id: str = ""
    platform: str = "X"
    username: str = ""
    content: str = ""
    posted_at: Optional[datetime] = None
    post_url: str = ""

    def to_dict(self):
        return {
            "id": self.id,
            "platform": self.platform,
            "username": self.username,
            "content": self.content,
            "posted_at": self.posted_at.isoformat() if self.posted_at else None,
            "post_url": self.post_url,
        }


class SocialMediaApiError(Exception):
    """Raised by a live social media service when the API answers with an error."""

    def __init__(self, status_code, message=""):
        super().__init__(f"Social media API error: {status_code} - {message}")
        self.status_code = status_code


def filter_posts_for_incident(posts: Iterable[SocialMediaPost], incident_time: datetime,
                              keywords: Iterable[str]) -> List[SocialMediaPost]:
    """
    Posts within +-30 minutes of incident_time whose content contains at least
    one keyword (case-insensitive). Blank keywords are ignored; with no keywords
    at all only the time window applies. Newest post first.
    """
    keyword_list = [k.strip().lower() for k in keywords if k and k.strip()]
    start = incident_time - LINK_WINDOW
    end = incident_time + LINK_WINDOW

    results = []
    for post in posts:
        if post.posted_at is None or not (start <= post.posted_at <= end):
            continue
        content = (post.content or "").lower()
        if keyword_list and not any(keyword in content for keyword in keyword_list):
            continue
        results.append(post)

    results.sort(key=lambda post: post.posted_at, reverse=True)
    return results


class MockSocialMediaService:
    """Static posts around the time the service was created."""

    def __init__(self, now=None):
        now = now or datetime.now()
        self._posts = [
            SocialMediaPost(
                id="1",
                username="amsterdam_news",
                content="Wat een chaos net bij het Gelderlandplein, politie overal.",
                posted_at=now - timedelta(minutes=10),
                post_url="https://x.com/amsterdam_news/1",
            ),
            SocialMediaPost(
                id="2",
                username="eyewitness123",
                content="Ik zag net een groep jongens wegrennen na een steekpartij.",
                posted_at=now - timedelta(minutes=5),
                post_url="https://x.com/eyewitness123/2",
            ),
            SocialMediaPost(
                id="3",
                username="user323",
                content="Lekker shoppen in Gelderlandplein!",
                posted_at=now - timedelta(minutes=8),
                post_url="https://x.com/user323/3",
            ),
            SocialMediaPost(
                id="4",
                username="random_user",
                content="Mooi weer vandaag in Amsterdam!",
                posted_at=now - timedelta(minutes=12),
                post_url="https://x.com/random_user/4",
            ),
            SocialMediaPost(
                id="5",
                username="late_report",
                content="Gisteren was het nog onrustig bij het plein.",
                posted_at=now - timedelta(hours=2),
                post_url="https://x.com/late_report/5",
            ),
        ]

    def get_posts_for_incident(self, incident_time, keywords):
        return filter_posts_for_incident(self._posts, incident_time, keywords)


class SocialMediaControlService:
    """
    Asks the live service first and falls back to the mock service on
    rate limits, bad requests and network problems. Other errors propagate.
    """

    def __init__(self, live_service=None, mock_service=None):
        self.live_service = live_service
        self.mock_service = mock_service or MockSocialMediaService()

    def get_posts_for_incident(self, incident_time, keywords):
        keywords = list(keywords)
        if self.live_service is None:
            return self.mock_service.get_posts_for_incident(incident_time, keywords)

        try:
            return self.live_service.get_posts_for_incident(incident_time, keywords)
        except SocialMediaApiError as e:
            if e.status_code not in FALLBACK_STATUS_CODES:
                raise
            logger.warning(f"Live social media lookup failed ({e.status_code}), using mock data")
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.warning(f"Live social media service unreachable, using mock data: {e}")

        return self.mock_service.get_posts_for_incident(incident_time, keywords)
