"""
Invocation endpoint for the scheduler.

    GET|POST /api/usage/collect
        Authorization: Bearer <api.cron_secret>

Responds 200 with the run report, 409 with the report when another run holds
the lock, 401 on a missing or wrong secret.
"""

import hmac
from typing import Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from .config_loader import lookup
from .errors import UsageAggregatorError
from .models import RunReport
from .orchestrator import collect_usage
from .utils import get_logger

logger = get_logger("api")


def create_app(config: Dict, run_collection: Optional[Callable[[], RunReport]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration dictionary (api.cron_secret)
        run_collection: Runs one collection and returns its report

    Returns:
        FastAPI app
    """
    cron_secret = lookup(config, "api.cron_secret")
    if run_collection is None:
        run_collection = lambda: collect_usage(config)  # noqa: E731

    app = FastAPI(title="Usage Aggregator")

    def require_cron_secret(authorization: Optional[str] = Header(default=None)):
        if not cron_secret:
            logger.error("api.cron_secret is not configured, rejecting request")
            raise HTTPException(status_code=401, detail="Unauthorized")
        expected = f"Bearer {cron_secret}".encode("utf-8")
        if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.api_route("/api/usage/collect", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
    def collect():
        try:
            report = run_collection()
        except UsageAggregatorError as e:
            logger.error("Usage collection failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": "Collection failed", "message": str(e)})

        body = report.to_dict()
        if report.skipped:
            return JSONResponse(status_code=409, content=body)
        return body

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
