"""
Download server: exposes the fetcher as a single GET /download?url=... action.

The response is the fetch result serialized as JSON. Anything unexpected is
caught at the middleware boundary, logged with its stack trace and answered
with a plain-text error so one bad request never takes the process down.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .fetcher import Fetcher

logger = structlog.get_logger(__name__)


def create_app(fetcher: Fetcher) -> FastAPI:
    app = FastAPI(title="spider-fetch download server")

    @app.middleware("http")
    async def recover(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("download_request_failed",
                         path=request.url.path,
                         query=request.url.query,
                         error=str(e),
                         exc_info=True)
            return PlainTextResponse("internal error", status_code=500)

    @app.get("/download")
    def download(url: str = ""):
        # sync handler: runs in the threadpool so concurrent fetches do not block the loop
        resp = fetcher.get(url)
        logger.info("download_finished", url=url, status=resp.status, size=resp.size)
        return resp.to_dict()

    @app.post("/download", response_class=PlainTextResponse)
    def download_post(request: Request):
        logger.warning("post_not_supported", path=str(request.url))
        return "not support post method"

    return app
