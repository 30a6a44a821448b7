"""Single cancelable image generation request with a rotating HUD readout."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import AsyncIterator, Callable

from ...chat.message_model import ImageProgress, new_id
from ..plans import ImageConfig, normalize_plan
from .cancellation import CancellationToken
from .types import BackendPort

__all__ = [
    "CAMERA_KEYWORDS",
    "DEFAULT_HUD_INTERVAL",
    "ImageJob",
    "LEAD_VERBS",
    "STYLE_KEYWORDS",
    "derive_progress_steps",
    "detect_keywords",
    "extract_subject",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_HUD_INTERVAL = 2.5

LEAD_VERBS: tuple[str, ...] = (
    "show me",
    "give me",
    "make me",
    "draw",
    "paint",
    "sketch",
    "illustrate",
    "render",
    "generate",
    "create",
    "make",
    "design",
    "produce",
    "imagine",
    "picture",
)
_POLITE_PREFIXES: tuple[str, ...] = ("please", "can you", "could you", "would you", "i want", "i'd like", "i would like")
_ARTICLES: tuple[str, ...] = ("a", "an", "the", "some", "me", "us", "my", "our")
_MEDIUM_NOUNS: tuple[str, ...] = (
    "image",
    "picture",
    "photo",
    "photograph",
    "illustration",
    "drawing",
    "painting",
    "portrait",
    "render",
    "sketch",
    "art",
    "artwork",
    "logo",
    "wallpaper",
)

STYLE_KEYWORDS: tuple[str, ...] = (
    "oil painting",
    "pixel art",
    "low poly",
    "line art",
    "watercolor",
    "watercolour",
    "anime",
    "cartoon",
    "comic",
    "photorealistic",
    "realistic",
    "3d",
    "pencil",
    "charcoal",
    "cyberpunk",
    "steampunk",
    "minimalist",
    "vintage",
    "retro",
    "surreal",
    "isometric",
    "neon",
    "vaporwave",
)
CAMERA_KEYWORDS: tuple[str, ...] = (
    "wide angle",
    "wide-angle",
    "close-up",
    "close up",
    "top-down",
    "bird's eye",
    "macro",
    "aerial",
    "drone",
    "bokeh",
    "telephoto",
    "fisheye",
    "35mm",
    "50mm",
    "85mm",
    "overhead",
    "cinematic",
    "long exposure",
)

_MAX_SUBJECT_WORDS = 6


def _strip_prefix(text: str, prefixes: tuple[str, ...]) -> tuple[str, bool]:
    for prefix in prefixes:
        if text == prefix:
            return "", True
        if text.startswith(prefix + " "):
            return text[len(prefix) + 1 :].lstrip(), True
    return text, False


def extract_subject(prompt: str) -> str:
    """Best-effort subject of an image request, e.g. ``"cat in a hat"``."""

    text = re.sub(r"[^\w\s'\-,]", " ", prompt.lower())
    text = " ".join(text.split())
    changed = True
    while changed and text:
        text, polite = _strip_prefix(text, _POLITE_PREFIXES)
        text, verb = _strip_prefix(text, LEAD_VERBS)
        text, article = _strip_prefix(text, _ARTICLES)
        changed = polite or verb or article

    of_match = re.search(r"\bof\s+(.+)$", text)
    if of_match:
        head = text[: of_match.start()].split()
        # Only treat "X of Y" as a medium clause ("an image of ..."), not "cup of tea".
        if not head or head[-1] in _MEDIUM_NOUNS or all(word in _ARTICLES + _MEDIUM_NOUNS for word in head):
            text = of_match.group(1)
    text, _ = _strip_prefix(text, _ARTICLES)
    text = text.split(",")[0].strip(" -'")
    words = text.split()[:_MAX_SUBJECT_WORDS]
    return " ".join(words) or "your idea"


def detect_keywords(prompt: str, vocabulary: tuple[str, ...]) -> list[str]:
    lowered = prompt.lower()
    found: list[str] = []
    for keyword in vocabulary:
        if re.search(rf"(?<![\w-]){re.escape(keyword)}(?![\w-])", lowered) and not any(keyword in hit for hit in found):
            found.append(keyword)
    return found


def derive_progress_steps(prompt: str) -> tuple[str, ...]:
    """Cosmetic HUD labels derived from ``prompt``; never sent to the backend."""

    steps = ["Reading your prompt", f"Sketching {extract_subject(prompt)}"]
    styles = detect_keywords(prompt, STYLE_KEYWORDS)
    if styles:
        steps.append(f"Applying {styles[0]} style")
    cameras = detect_keywords(prompt, CAMERA_KEYWORDS)
    if cameras:
        steps.append(f"Framing a {cameras[0]} shot")
    steps.extend(["Adding lighting and detail", "Final touches"])
    return tuple(steps)


class ImageJob:
    """One outstanding image request and the HUD timer it owns.

    The timer only lives inside :meth:`hud`, so every exit path of
    :meth:`run` stops it. :meth:`stop_hud` may also be called from the
    outside (the stop button) and is idempotent.
    """

    def __init__(
        self,
        prompt: str,
        *,
        plan: str,
        job_id: str | None = None,
        model: str | None = None,
        config: ImageConfig | None = None,
        token: CancellationToken | None = None,
        interval: float = DEFAULT_HUD_INTERVAL,
    ) -> None:
        self.id = job_id or new_id()
        self.prompt = prompt
        self.plan = normalize_plan(plan)
        self.model = model
        self.config = config
        self.token = token or CancellationToken(name=f"image-{self.id}")
        self.interval = interval
        self.steps = derive_progress_steps(prompt)
        self.step_index = 0
        self._hud_task: asyncio.Task[None] | None = None
        self._hud_stopped = False

    @property
    def progress(self) -> ImageProgress:
        return ImageProgress(label=self.steps[self.step_index], index=self.step_index, steps=self.steps)

    @property
    def hud_running(self) -> bool:
        return self._hud_task is not None and not self._hud_stopped

    def advance(self) -> ImageProgress:
        self.step_index = (self.step_index + 1) % len(self.steps)
        return self.progress

    @contextlib.asynccontextmanager
    async def hud(self, publish: Callable[[ImageProgress], None]) -> AsyncIterator["ImageJob"]:
        publish(self.progress)
        self._hud_task = asyncio.create_task(self._tick(publish), name=f"image-hud-{self.id}")
        try:
            yield self
        finally:
            self.stop_hud()

    async def _tick(self, publish: Callable[[ImageProgress], None]) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._hud_stopped or self.token.cancelled:
                return
            publish(self.advance())

    def stop_hud(self) -> bool:
        """Stop the HUD timer. Returns True only for the call that stopped it."""

        if self._hud_stopped:
            return False
        self._hud_stopped = True
        if self._hud_task is not None and not self._hud_task.done():
            self._hud_task.cancel()
        LOGGER.debug("HUD for image job %s stopped at step %s", self.id, self.step_index)
        return True

    async def run(self, gateway: BackendPort, publish: Callable[[ImageProgress], None]) -> str:
        """Generate the image and return its URL.

        Raises:
            TurnCancelled: the token fired; any late URL is discarded.
            ImageGenerationError: the backend failed.
        """

        LOGGER.info("Image job %s started (%s step(s))", self.id, len(self.steps))
        async with self.hud(publish):
            url = await self.token.guard(
                gateway.generate_image(self.prompt, plan=self.plan, model=self.model, config=self.config)
            )
        LOGGER.info("Image job %s finished", self.id)
        return url
