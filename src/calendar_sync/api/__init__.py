"""FastAPI application and routes.

## API Structure

- /webhooks/google-calendar - Provider push notifications
- /internal/channels/renew - Renewal sweep trigger (cron)
- /internal/accounts/{account_id}/connect - Connect an account
- /internal/accounts/{account_id} - Disconnect an account (DELETE)
- /internal/accounts/{account_id}/sync-health - Re-authorization flag
- /health - Liveness check

## Authentication

The webhook is authenticated by the per-channel token echoed by the
provider. Internal routes require the `X-Internal-Api-Key` header.
"""

from calendar_sync.api.app import create_app

__all__ = ["create_app"]
