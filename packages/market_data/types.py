from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BackfillOptions:
    # None keeps the configured value
    concurrent_requests: Optional[int] = None
    client_refresh_threshold: Optional[int] = None
    max_retries: Optional[int] = None
