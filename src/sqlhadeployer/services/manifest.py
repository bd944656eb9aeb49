"""Run manifest generation service."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlhadeployer.services.atomic_file import write_json_atomic


def _elapsed(started_at: str, finished_at: str) -> float:
    return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()


class ManifestService:
    """Records what one stage did: steps, durations, artifacts and outcome."""

    def __init__(self, manifest_file: str, logger, stage: str):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "stage": stage,
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "steps": [],
            "artifacts": {},
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.manifest.update(
            {
                "run_id": run_id,
                "status": "running",
                "started_at": self._now(),
                "metadata": metadata,
            }
        )
        self.write()

    def step_started(self, step_name: str, details: Optional[Dict[str, Any]] = None):
        self.manifest["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": dict(details or {}),
                "error": None,
            }
        )
        self.write()

    def step_finished(
        self,
        step_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        running = [
            step
            for step in self.manifest["steps"]
            if step["name"] == step_name and step["status"] == "running"
        ]
        if running:
            step = running[-1]
            step["status"] = status
            step["finished_at"] = self._now()
            step["duration_seconds"] = _elapsed(step["started_at"], step["finished_at"])
            step["error"] = error
            step["details"].update(details or {})
        self.write()

    def add_artifact(self, key: str, value: str):
        self.manifest["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        finished_at = self._now()
        self.manifest["status"] = status
        self.manifest["finished_at"] = finished_at
        self.manifest["error"] = error
        if self.manifest.get("started_at"):
            self.manifest["duration_seconds"] = _elapsed(self.manifest["started_at"], finished_at)
        self.write()

    def write(self):
        try:
            write_json_atomic(self.manifest_file, self.manifest, prefix="run-manifest-")
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
