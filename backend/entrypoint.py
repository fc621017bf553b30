"""Run the GiftFlow API with uvicorn."""
import uvicorn

from giftflow.core.config import settings
from giftflow.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
