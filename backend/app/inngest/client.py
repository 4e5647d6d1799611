"""
Inngest client shared by the serve endpoint and all functions.
"""

import os
import logging
import inngest

logger = logging.getLogger(__name__)

inngest_client = inngest.Inngest(
    app_id=os.getenv("INNGEST_APP_ID", "makos"),
    is_production=os.getenv("INNGEST_IS_PRODUCTION", "false").lower() == "true",
    logger=logger,
)
