"""Analysis service client: turns a paid session's photo into observations and looks."""

from abc import ABC, abstractmethod

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.analysis_session import AnalysisResults, AnalysisSession

log = get_logger(__name__)


class AnalysisPipeline(ABC):
    @abstractmethod
    async def run(self, analysis: AnalysisSession) -> AnalysisResults:
        """Produce results for ``analysis`` or raise."""
        ...


class HttpAnalysisPipeline(AnalysisPipeline):
    """Posts the session to the analysis service and waits for the full result."""

    def __init__(self, url: str, token: str = "", timeout_seconds: float = 300):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    async def run(self, analysis: AnalysisSession) -> AnalysisResults:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {
            "session_id": str(analysis.id),
            "image_ref": analysis.before_image_ref,
            "occasion": analysis.occasion,
            "preferences": analysis.preferences.model_dump(),
        }
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        results = AnalysisResults.model_validate(data)
        log.info("analysis_pipeline_done", session_id=str(analysis.id), looks=len(results.looks))
        return results


def get_pipeline() -> AnalysisPipeline:
    s = get_settings()
    return HttpAnalysisPipeline(s.analysis_service_url, s.analysis_service_token, s.analysis_timeout_seconds)
