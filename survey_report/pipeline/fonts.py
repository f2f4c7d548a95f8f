from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Callable, Optional

from .. import config
from ..errors import FontRegistrationError, InvalidArgument
from ..models import FontRegistrationState

logger = logging.getLogger(__name__)

PayloadLoader = Callable[[], str]


def read_font_payload(path: Optional[Path] = None) -> str:
    path = path or config.FONT_PAYLOAD_PATH
    if not path.exists():
        raise FontRegistrationError(f"Font payload not found: {path}")
    return path.read_text(encoding="ascii")


def decode_font_payload(payload: str) -> bytes:
    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FontRegistrationError(f"Font payload is not valid base64: {exc}") from exc
    if not data:
        raise FontRegistrationError("Font payload is empty")
    return data


class GlyphAssetService:
    """
    Loads the bundled subset font into a document engine.

    The payload is loaded into the engine's asset store once per engine;
    activation runs on every initialize() call because the active font on a
    canvas can be changed by any later drawing code.
    """

    def __init__(
        self,
        payload_loader: Optional[PayloadLoader] = None,
        family: str = config.PDF_FONT_FAMILY,
        file_name: str = config.PDF_FONT_FILE,
    ) -> None:
        self._payload_loader = payload_loader or read_font_payload
        self._family = family
        self._file_name = file_name
        self._state = FontRegistrationState.NOT_LOADED

    @property
    def state(self) -> FontRegistrationState:
        return self._state

    @property
    def family_name(self) -> str:
        return self._family

    def get_family_name(self) -> str:
        return self._family

    def is_loaded(self) -> bool:
        return self._state == FontRegistrationState.LOADED

    def reset(self) -> None:
        self._state = FontRegistrationState.NOT_LOADED

    def initialize(self, engine) -> None:
        if engine is None:
            raise InvalidArgument("Document engine is required")
        try:
            if not engine.has_font_asset(self._file_name):
                engine.add_font_asset(self._file_name, self._decode(self._payload_loader()))
                logger.debug("Font asset %s loaded into engine", self._file_name)
            engine.register_font(self._file_name, self._family)
            engine.activate_font(self._family)
        except Exception:
            self._state = FontRegistrationState.FAILED
            raise
        self._state = FontRegistrationState.LOADED

    @staticmethod
    def _decode(payload: str) -> bytes:
        return decode_font_payload(payload)
