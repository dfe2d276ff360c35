from __future__ import annotations

import uvicorn

from bgrelay.config import settings


if __name__ == "__main__":
    uvicorn.run(
        "bgrelay.presentation.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
