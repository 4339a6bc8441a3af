import logging
import math
from pathlib import Path
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse

from . import __version__
from .config import Settings
from .decoder import PayloadDecoder
from .errors import (
    AlreadyExistsError,
    ArtifactMissingError,
    CorruptStateError,
    DecodeError,
    JobNotFoundError,
    PathTraversalError,
)
from .lifecycle import JobLifecycle
from .models import JobHandle, JobStatus, PendingNotice
from .storage import build_store
from .stream import build_announcer
from .watcher import CompletionWatcher


def auto_reloading_page(message: str = "Loading ...") -> str:
    return f"""
<html>
    <body>
        <h1>
            {message}
        </h1>

        <script>
        setInterval(function() {{
            var h1 = document.querySelector('h1');
            if(h1) {{
                h1.innerHTML += '.';
            }}
        }}, 300)
        setInterval(function() {{
            window.location.reload(true);
        }}, 1200)
        </script>
    </body>
</html>
"""


def build_lifecycle(settings: Settings) -> JobLifecycle:
    Path(settings.sources_folder).mkdir(parents=True, exist_ok=True)
    store = build_store(settings)
    return JobLifecycle(
        store=store,
        decoder=PayloadDecoder(settings.sources_folder),
        watcher=CompletionWatcher(store, grace_period=settings.grace_period),
        announcer=build_announcer(settings),
    )


def create_app(settings: Optional[Settings] = None, lifecycle: Optional[JobLifecycle] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    lifecycle = lifecycle or build_lifecycle(settings)

    app = FastAPI(title="Quasar API", version=__version__)
    app.state.settings = settings
    app.state.lifecycle = lifecycle

    async def job_view(job_id: str, wait: Optional[float] = None):
        if wait is not None and (not math.isfinite(wait) or wait < 0):
            raise HTTPException(status_code=422, detail="wait must be a finite number of seconds >= 0")
        try:
            if wait:
                await lifecycle.wait(job_id, min(wait, settings.max_wait), settings.poll_interval)
            result = lifecycle.fetch_artifact(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="job not found")
        except ArtifactMissingError as exc:
            return JSONResponse(
                status_code=500,
                content={"id": job_id, "status": JobStatus.COMPLETED.value, "error": str(exc),
                         "expectedPath": exc.expected_path},
            )

        if isinstance(result, PendingNotice):
            if result.status == JobStatus.FAILED:
                return JSONResponse(
                    status_code=409,
                    content={"id": job_id, "status": result.status.value, "error": "job failed"},
                )
            return HTMLResponse(auto_reloading_page(f"Job has been {result.status.value} ..."))

        return FileResponse(result.path, filename=Path(result.path).name)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/")
    async def landing_page(jobId: Optional[str] = None):
        if jobId:
            return await job_view(jobId)
        return HTMLResponse("Hello, world!")

    @app.post("/", response_model=JobHandle)
    def create_job(payload: Any = Body(...)):
        try:
            return lifecycle.submit(payload)
        except (DecodeError, PathTraversalError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except AlreadyExistsError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.get("/job/{job_id}")
    async def get_job(job_id: str, wait: Optional[float] = Query(None, ge=0, allow_inf_nan=False)):
        return await job_view(job_id, wait)

    @app.get("/public/{domain}/{signal}")
    def get_public_build(domain: str, signal: str, target: str = ""):
        root = Path(settings.assets_folder).resolve()
        p = (root / domain / signal / target).resolve()
        if root not in p.parents or not p.is_file():
            logging.info("Asset not found: %s", p)
            return JSONResponse(status_code=404, content={})
        return FileResponse(str(p), filename=p.name)

    @app.exception_handler(CorruptStateError)
    async def corrupt_state(request: Request, exc: CorruptStateError):
        logging.critical("Job %s storage is corrupt: %s", exc.job_id, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app
