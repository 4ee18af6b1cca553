import logging

from app.core.config import get_settings
from app.main import app

# Root logging for the ASGI process; modules log through logging.getLogger(__name__)
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

logger.info("Release Watch api/index.py initialized")

# Serve with: uvicorn api.index:app
__all__ = ["app"]
