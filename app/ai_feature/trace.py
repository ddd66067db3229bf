import logging
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AgentTrace:
    """
    Step-by-step record of how one question was answered.

    Same idea as the ETL PipelineLogger: every step is kept for the
    response payload and also forwarded to the module logger.
    """

    def __init__(self, user_id: Optional[int] = None):
        self.user_id = user_id
        self.started = time.perf_counter()
        self.steps: List[Dict[str, Any]] = []

    def log(self, step: str, message: str, level: str = "info"):
        elapsed_ms = int((time.perf_counter() - self.started) * 1000)
        self.steps.append({"step": step, "message": message, "elapsed_ms": elapsed_ms})

        line = f"[User {self.user_id}] {step}: {message}"
        if level == "error":
            logger.error(line)
        elif level == "warning":
            logger.warning(line)
        else:
            logger.info(line)

    def get_steps(self) -> List[Dict[str, Any]]:
        return list(self.steps)
