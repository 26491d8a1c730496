from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PageEnvironment:
    """
    Static-ish facts about the host page/process. The url/title move with
    navigation; everything else is read when session metadata is snapshotted.
    """

    url: str = ""
    title: str = ""
    referrer: str | None = None
    user_agent: str = ""
    language: str = "en"
    screen_width: int = 0
    screen_height: int = 0
    viewport_width: int = 0
    viewport_height: int = 0

    def navigate(self, url: str, title: str | None = None) -> None:
        self.url = url
        if title is not None:
            self.title = title
