from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from PIL import Image, ImageDraw, ImageFont

from reelforge_contracts.errors import MediaToolError
from reelforge_video.application.ports import FrameRenderer
from reelforge_video.domain.models import FrameText
from reelforge_video.infrastructure.logging import get_logger

log = get_logger(__name__)

TEXT_DARK_BLUE = "#388090"
TEXT_BLACK = "#000000"
GREEN_ACCENT = "#629f60"
WHITE = "#f8f8f8"
BOX_BORDER = "#a0a0a0"
BOX_TEXT = "#0b5394"
BOX_FILL = (255, 255, 255, 230)


@dataclass(frozen=True)
class FontScale:
    """Font size that shrinks linearly once a text passes ``trigger_words``."""

    base: float
    minimum: float
    trigger_words: int
    max_words: int

    def size_for(self, text: str) -> float:
        words = len(text.split())
        if words <= self.trigger_words:
            return self.base
        over = min(words, self.max_words) - self.trigger_words
        span = self.max_words - self.trigger_words
        return self.base - (over / span) * (self.base - self.minimum)


SERIES_TITLE_SCALE = FontScale(base=35, minimum=20, trigger_words=4, max_words=15)
MAIN_TITLE_SCALE = FontScale(base=55, minimum=30, trigger_words=5, max_words=20)
SPEAKER_SCALE = FontScale(base=45, minimum=25, trigger_words=3, max_words=10)
EXTRA_TEXT_SCALE = FontScale(base=28, minimum=16, trigger_words=30, max_words=80)


def wrap_text(text: str, measure: Callable[[str], float], max_width: float) -> list[str]:
    """Greedy word wrap. A single word wider than ``max_width`` gets its own line."""
    words = text.split()
    if not words:
        return [""]
    lines: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if current and measure(candidate) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


class PillowFrameRenderer(FrameRenderer):
    """Title card: text stack in the right 60% of the frame over an optional background."""

    def __init__(
        self,
        background: Path | None = None,
        font_path: Path | None = None,
        size: tuple[int, int] = (1280, 720),
    ) -> None:
        self.background = background
        self.font_path = font_path
        self.size = size

    def _font(self, size: float) -> ImageFont.FreeTypeFont:
        px = max(1, round(size))
        if self.font_path:
            return ImageFont.truetype(str(self.font_path), px)
        return ImageFont.load_default(size=px)

    def _canvas(self) -> Image.Image:
        if self.background and Path(self.background).exists():
            try:
                with Image.open(self.background) as bg:
                    return bg.convert("RGB").resize(self.size)
            except OSError as exc:
                log.warning("frame.background_unreadable path=%s error=%s", self.background, exc)
        return Image.new("RGB", self.size, WHITE)

    def render(self, *, text: FrameText, out_path: Path) -> None:
        width, _ = self.size
        image = self._canvas()
        draw = ImageDraw.Draw(image, "RGBA")

        left = width * 0.4
        section_width = width - left - 60
        cx = left + section_width / 2
        y = 90.0

        # series title, then a short divider
        size = SERIES_TITLE_SCALE.size_for(text.series_title)
        font = self._font(size)
        line_height = round(size * 1.25)
        for line in wrap_text(text.series_title, lambda s: draw.textlength(s, font=font), section_width * 0.9):
            draw.text((cx, y), line, font=font, fill=TEXT_BLACK, anchor="ms")
            y += line_height
        divider_y = y - line_height + 20
        draw.line([(cx - 150, divider_y), (cx + 150, divider_y)], fill=TEXT_BLACK, width=2)
        y = divider_y + 70

        size = MAIN_TITLE_SCALE.size_for(text.main_title)
        font = self._font(size)
        line_height = round(size * 1.25)
        for line in wrap_text(text.main_title, lambda s: draw.textlength(s, font=font), section_width * 0.7):
            draw.text((cx, y), line, font=font, fill=TEXT_DARK_BLUE, anchor="ms")
            y += line_height
        y += 30

        # speaker bubble
        size = round(SPEAKER_SCALE.size_for(text.speaker))
        font = self._font(size)
        bubble_width = draw.textlength(text.speaker, font=font) + 60
        bubble_height = size + 30
        bubble_x = cx - bubble_width / 2
        draw.rounded_rectangle(
            [bubble_x, y, bubble_x + bubble_width, y + bubble_height],
            radius=bubble_height / 2,
            fill=GREEN_ACCENT,
        )
        draw.text((cx, y + bubble_height / 2), text.speaker, font=font, fill=WHITE, anchor="mm")
        y += bubble_height + 30

        if text.extra_text and text.extra_text.strip():
            self._draw_text_box(draw, text.extra_text, cx=cx, top=y, box_width=section_width * 0.9)

        try:
            image.save(out_path, format="PNG")
        except OSError as exc:
            raise MediaToolError(f"Could not write frame {out_path}: {exc}") from exc

    def _draw_text_box(self, draw: ImageDraw.ImageDraw, extra_text: str, *, cx: float, top: float, box_width: float) -> None:
        padding = 20
        size = round(EXTRA_TEXT_SCALE.size_for(extra_text))
        font = self._font(size)
        line_height = round(size * 1.4)
        lines = wrap_text(extra_text, lambda s: draw.textlength(s, font=font), box_width - padding * 2)
        box_height = len(lines) * line_height + padding * 2
        box_x = cx - box_width / 2
        draw.rounded_rectangle(
            [box_x, top, box_x + box_width, top + box_height],
            radius=10,
            fill=BOX_FILL,
            outline=BOX_BORDER,
            width=2,
        )
        y = top + padding + line_height / 2
        for line in lines:
            draw.text((cx, y), line, font=font, fill=BOX_TEXT, anchor="mm")
            y += line_height
