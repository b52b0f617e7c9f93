"""FastAPI dependencies for the internal routes.

Internal routes (renewal trigger, account setup, sync health) are called by
trusted collaborators such as a cron job or the service that owns user
authorization. They are guarded by a shared key sent in `X-Internal-Api-Key`.

## Usage

```python
from fastapi import Depends
from calendar_sync.auth import require_internal_api_key

@router.post("/channels/renew", dependencies=[Depends(require_internal_api_key)])
async def renew_channels():
    ...
```
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, status

from calendar_sync.config import get_settings

logger = logging.getLogger(__name__)


async def require_internal_api_key(
    api_key: str | None = Header(default=None, alias="X-Internal-Api-Key"),
) -> None:
    """Reject requests without the configured internal API key.

    Raises 503 when no key is configured, 401 when the header is missing or
    wrong.
    """
    expected = get_settings().internal_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API disabled",
        )

    if api_key is None or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Rejected internal request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
        )
