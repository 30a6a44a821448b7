"""Localized, deterministic replacement text for stopped or failed turns."""

from __future__ import annotations

import zlib
from typing import Callable, Literal, Mapping, Sequence

__all__ = ["StopKind", "image_failed_text", "stopped_text", "supported_languages"]

StopKind = Literal["text", "image"]
_Template = Callable[[str], str]

_TEXT_TEMPLATES: Mapping[str, Sequence[_Template]] = {
    "en": (
        lambda f: f"Okay {f}, I've paused. Want a short summary or should we start fresh?",
        lambda f: f"Got it, {f}. Stopped. I can turn what we had into bullet points or continue later.",
        lambda f: f"All set, {f}. I halted the reply. Ask again whenever you're ready.",
    ),
    "es": (
        lambda f: f"Listo, {f}. He detenido la respuesta. ¿Quieres un resumen rápido o empezar de nuevo?",
        lambda f: f"{f}, pausa hecha. Puedo convertir lo que hay en viñetas o continuar más tarde.",
    ),
    "fr": (
        lambda f: f"D'accord, {f}. J'ai arrêté. Tu veux un bref résumé ou repartir sur une autre piste ?",
        lambda f: f"{f}, c'est en pause. Je peux faire un résumé ou reprendre plus tard.",
    ),
    "pt": (
        lambda f: f"Beleza, {f}. Parei aqui. Quer um resumo rápido ou começar do zero?",
        lambda f: f"{f}, interrompi a resposta. Posso transformar em tópicos ou continuar depois.",
    ),
    "de": (
        lambda f: f"Okay, {f}. Ich habe gestoppt. Soll ich kurz zusammenfassen oder neu starten?",
        lambda f: f"{f}, pausiert. Ich kann Stichpunkte machen oder später fortsetzen.",
    ),
    "it": (
        lambda f: f"Ok, {f}. Ho messo in pausa. Vuoi un breve riassunto o ripartire da capo?",
        lambda f: f"{f}, fermato. Posso fare punti elenco o riprendere dopo.",
    ),
}

_IMAGE_TEMPLATES: Mapping[str, Sequence[_Template]] = {
    "en": (
        lambda f: f"Okay {f}, I stopped the image. Want me to try again with a different angle?",
        lambda f: f"Got it, {f}. Image generation halted. Send the prompt again whenever you like.",
    ),
    "es": (
        lambda f: f"{f}, he cancelado la imagen. ¿Reintento o te describo la idea?",
        lambda f: f"Imagen detenida, {f}. Puedo probar retrato o paisaje.",
    ),
    "fr": (
        lambda f: f"{f}, image arrêtée. Je peux relancer ou te décrire l'idée.",
        lambda f: f"Image annulée, {f}. Portrait ou paysage, tu choisis.",
    ),
    "pt": (
        lambda f: f"{f}, imagem interrompida. Posso refazer ou descrever a ideia.",
        lambda f: f"Cancelei a imagem, {f}. Tenta retrato ou paisagem?",
    ),
    "de": (
        lambda f: f"{f}, Bild gestoppt. Ich kann neu rendern oder die Idee beschreiben.",
        lambda f: f"Bild abgebrochen, {f}. Porträt oder Landschaft?",
    ),
    "it": (
        lambda f: f"{f}, immagine fermata. Posso riprovare o descriverti l'idea.",
        lambda f: f"Immagine annullata, {f}. Verticale o orizzontale?",
    ),
}


def supported_languages() -> tuple[str, ...]:
    return tuple(_TEXT_TEMPLATES)


def _first_name(display_name: str | None) -> str:
    parts = (display_name or "").split()
    return parts[0] if parts else "friend"


def _pick(templates: Sequence[_Template], seed: str) -> _Template:
    return templates[zlib.crc32(seed.encode("utf-8")) % len(templates)]


def stopped_text(
    kind: StopKind,
    *,
    language: str | None = None,
    display_name: str | None = None,
    seed: str = "",
) -> str:
    """Return the "stopped" message for ``kind``.

    The same ``seed`` (normally the message id) always yields the same text.
    Unknown languages fall back to English.
    """

    table = _IMAGE_TEMPLATES if kind == "image" else _TEXT_TEMPLATES
    code = (language or "en").split("-")[0].lower()
    templates = table.get(code) or table["en"]
    return _pick(templates, seed)(_first_name(display_name))


def image_failed_text(reason: str | None, *, display_name: str | None = None) -> str:
    detail = (reason or "").strip() or "unknown error"
    return (
        f"Sorry {_first_name(display_name)}, I couldn't create that image ({detail}). "
        "Please try again or tweak the prompt."
    )
