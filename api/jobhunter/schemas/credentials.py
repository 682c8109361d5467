from datetime import datetime

from jobhunter.schemas.common import ApiModel


class CredentialStatusOut(ApiModel):
    is_connected: bool
    needs_refresh: bool
    expires_at: datetime | None = None
