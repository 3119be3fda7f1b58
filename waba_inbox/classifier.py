"""
Inbound message content classification.

Maps a provider message to the display content shown in the inbox, the
message type stored on the row, and (for media) the seed of the media
descriptor. Pure functions, no I/O.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from waba_inbox.schemas import MediaInfo, RawMessage

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    UNKNOWN = "unknown"

    @classmethod
    def of(cls, raw_type: str) -> "MessageKind":
        try:
            kind = cls(raw_type)
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class MediaSeed:
    """Provider-side facts about a media attachment, before relay."""
    type: str
    id: Optional[str]
    mime_type: Optional[str]
    sha256: Optional[str]
    caption: Optional[str] = None
    filename: Optional[str] = None
    voice: Optional[bool] = None

    def to_descriptor(
        self,
        media_url: Optional[str],
        upload_timestamp: Optional[str],
        upload_error: Optional[str],
    ) -> dict[str, Any]:
        """
        Build the persisted media descriptor.

        Key names are read by the dashboard; s3_uploaded is true iff
        media_url is set.
        """
        descriptor: dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "mime_type": self.mime_type,
            "sha256": self.sha256,
        }
        for key in ("caption", "filename", "voice"):
            value = getattr(self, key)
            if value is not None:
                descriptor[key] = value
        descriptor.update(
            {
                "media_url": media_url,
                "s3_uploaded": media_url is not None,
                "upload_timestamp": upload_timestamp if media_url is not None else None,
                "upload_error": None if media_url is not None else upload_error,
            }
        )
        return descriptor


@dataclass(frozen=True)
class Classification:
    content: str
    message_type: str
    media: Optional[MediaSeed]


def _info(raw: RawMessage, kind: MessageKind) -> MediaInfo:
    return getattr(raw, kind.value) or MediaInfo()


def _seed(kind: MessageKind, info: MediaInfo, **extra) -> MediaSeed:
    return MediaSeed(
        type=kind.value,
        id=info.id,
        mime_type=info.mime_type,
        sha256=info.sha256,
        **extra,
    )


def _text(raw: RawMessage) -> Classification:
    body = raw.text.body if raw.text else None
    return Classification(body or "", MessageKind.TEXT.value, None)


def _image(raw: RawMessage) -> Classification:
    info = _info(raw, MessageKind.IMAGE)
    return Classification(
        info.caption or "[Image]",
        MessageKind.IMAGE.value,
        _seed(MessageKind.IMAGE, info, caption=info.caption),
    )


def _document(raw: RawMessage) -> Classification:
    info = _info(raw, MessageKind.DOCUMENT)
    return Classification(
        f"[Document: {info.filename or 'Unknown'}]",
        MessageKind.DOCUMENT.value,
        _seed(MessageKind.DOCUMENT, info, filename=info.filename),
    )


def _audio(raw: RawMessage) -> Classification:
    info = _info(raw, MessageKind.AUDIO)
    return Classification(
        "[Voice Message]" if info.voice else "[Audio]",
        MessageKind.AUDIO.value,
        _seed(MessageKind.AUDIO, info, voice=info.voice),
    )


def _video(raw: RawMessage) -> Classification:
    info = _info(raw, MessageKind.VIDEO)
    return Classification(
        info.caption or "[Video]",
        MessageKind.VIDEO.value,
        _seed(MessageKind.VIDEO, info, caption=info.caption),
    )


def _sticker(raw: RawMessage) -> Classification:
    info = _info(raw, MessageKind.STICKER)
    return Classification(
        "[Sticker]",
        MessageKind.STICKER.value,
        _seed(MessageKind.STICKER, info),
    )


_CLASSIFIERS: dict[MessageKind, Callable[[RawMessage], Classification]] = {
    MessageKind.TEXT: _text,
    MessageKind.IMAGE: _image,
    MessageKind.DOCUMENT: _document,
    MessageKind.AUDIO: _audio,
    MessageKind.VIDEO: _video,
    MessageKind.STICKER: _sticker,
}


def classify(raw: RawMessage) -> Classification:
    """
    Classify one provider message.

    Never raises for well-formed RawMessage input; unsupported types degrade
    to a placeholder content with no media.
    """
    kind = MessageKind.of(raw.type)
    handler = _CLASSIFIERS.get(kind)
    if handler is None:
        logger.warning(f"Unsupported message type: {raw.type}")
        return Classification(
            f"[Unsupported message type: {raw.type}]",
            raw.type,
            None,
        )
    return handler(raw)
