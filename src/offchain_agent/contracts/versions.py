"""
Версии контрактов (queue/HTTP).

Назначение:
- единая точка истинных версий
- удобная проверка совместимости
"""

from __future__ import annotations

ENVELOPE_CODEC_VERSION = 1
SUPPORTED_CODEC_VERSIONS = frozenset({ENVELOPE_CODEC_VERSION})
HTTP_API_VERSION = "v1"
