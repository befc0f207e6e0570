"""
External tool wrappers for the listing post scheduler.

- UploadPostClient: upload-post API for publishing listing media to
  social platforms (one call per platform)
"""

from listing_scheduler.tools.upload_post import PublishRequest, PublishResult, UploadPostClient

__all__ = ["PublishRequest", "PublishResult", "UploadPostClient"]
