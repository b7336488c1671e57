# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for StoryReel:
#  Reference studio (consistent scene images)
#    - /characters            -> reference characters (images + style text)
#    - /scenes                -> ordered scene list, CRUD
#    - POST /scenes/{id}/generate, POST /scenes/generate-all
#    - GET  /export           -> zip of rendered scenes
#  Bulk video queue
#    - POST /jobs, POST /jobs/csv   -> enqueue Veo renders
#    - POST /jobs/start             -> run the queue (4 at a time)
#    - POST /jobs/{id}/retry, DELETE /jobs/{id}, DELETE /jobs
#  Files
#    - GET  /files/{key}      -> stream local or R2
#    - GET  /debug/config     -> runtime env (hide in prod)
#  Persistence:
#    * SQLModel + SQLite for durable jobs (survives restarts)
#    * characters and scenes live in memory for the session
# ------------------------------------------------------------------------------------

import base64
import mimetypes
import os
from typing import List, Optional

from fastapi import FastAPI, BackgroundTasks, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from exceptions import (
    ExportError, InvalidJobRequest, InvalidJobTransition, NoStyleAnchor, ReferenceLimitExceeded,
    UnknownCharacter,
)
from export import export_scenes, job_video_filename
from gemini_client import ASPECT_RATIOS, VIDEO_MODELS, GeminiClient
from job_requests import build_job_drafts, prompts_from_csv
from job_scheduler import JobScheduler
from job_store import InputType, Job, JobStore, make_engine
from logging_config import get_logger, setup_logging
from reference_store import Character, ReferenceStore, Scene
from scene_orchestrator import SceneOrchestrator, bootstrap_order
from settings import settings
from storage import decode_data_uri, make_storage

setup_logging(settings.log_level)
logger = get_logger("api")

STORAGE = settings.storage
use_r2 = STORAGE == "r2"
if use_r2:
    from r2_client import get_object_stream

# ---------------- Wiring ----------------
storage = make_storage(settings)
gateway = GeminiClient()
job_store = JobStore(make_engine(settings.database_url))
reference_store = ReferenceStore()
orchestrator = SceneOrchestrator(reference_store, gateway, storage)
scheduler = JobScheduler(job_store, gateway, storage, max_concurrent=settings.max_concurrent_jobs)

# ------------- FastAPI app --------------
app = FastAPI(title="StoryReel API", version="0.3.0")

# 🔴 In prod, tighten this list to your domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def _on_startup():
    job_store.init_db()
    interrupted = job_store.fail_interrupted()
    if interrupted:
        logger.warning(f"{interrupted} job(s) were running at last shutdown; marked Failed")

@app.on_event("shutdown")
async def _on_shutdown():
    # in-flight renders cannot be cancelled: stop promoting and let them land
    scheduler.stop()
    await scheduler.wait_idle()

# ---------- Schemas ----------
class CharacterImageOut(BaseModel):
    id: str
    mime_type: str
    data_url: str

class CharacterOut(BaseModel):
    id: str
    name: str
    style_description: str
    images: List[CharacterImageOut]
    is_default: bool
    is_selected: bool
    prompt: str

class CharacterPatch(BaseModel):
    name: Optional[str] = None
    style_description: Optional[str] = None
    prompt: Optional[str] = None

class ImageUpload(BaseModel):
    data: str = Field(..., description="Base64 payload or data URI")
    mime_type: str = Field("image/png", description="Ignored when data is a data URI")

class SceneCreate(BaseModel):
    script: str = ""
    prompt: str = ""
    selected_character_ids: Optional[List[str]] = None

class ScenePatch(BaseModel):
    script: Optional[str] = None
    prompt: Optional[str] = None
    selected_character_ids: Optional[List[str]] = None

class GenerateSceneRequest(BaseModel):
    refine_prompt: Optional[str] = None
    use_existing_image: bool = False

class JobParams(BaseModel):
    input_type: InputType = InputType.TEXT
    model: str = VIDEO_MODELS[0]
    aspect_ratio: str = "16:9"
    output_count: int = Field(1, ge=1)
    context_prompt: str = ""
    creative_context: bool = False

    @field_validator("model")
    @classmethod
    def _known_model(cls, v):
        if v not in VIDEO_MODELS:
            raise ValueError(f"model must be one of {', '.join(VIDEO_MODELS)}")
        return v

    @field_validator("aspect_ratio")
    @classmethod
    def _known_ratio(cls, v):
        if v not in ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}")
        return v

class CreateJobRequest(JobParams):
    prompt: str

class CsvJobRequest(JobParams):
    csv_text: str
    column: str = "prompt"

class JobOut(BaseModel):
    id: str
    status: str
    prompt: str
    input_type: str
    model: str
    aspect_ratio: str
    output_count: int
    has_image: bool
    reference_character_names: List[str]
    progress_message: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None

class QueueOut(BaseModel):
    processing: bool
    jobs: List[JobOut]

def _character_out(c: Character) -> CharacterOut:
    return CharacterOut(
        id=c.id,
        name=c.name,
        style_description=c.style_description,
        images=[
            CharacterImageOut(
                id=img.id,
                mime_type=img.mime_type,
                data_url=f"data:{img.mime_type};base64,{base64.b64encode(img.data).decode('ascii')}",
            )
            for img in c.images
        ],
        is_default=c.is_default,
        is_selected=c.is_selected,
        prompt=c.prompt,
    )

def _job_out(job: Job) -> JobOut:
    return JobOut(
        id=job.id,
        status=job.status.value,
        prompt=job.prompt,
        input_type=job.input_type.value,
        model=job.model,
        aspect_ratio=job.aspect_ratio,
        output_count=job.output_count,
        has_image=job.image_data is not None,
        reference_character_names=job.reference_character_names or [],
        progress_message=job.progress_message,
        video_url=job.result_url,
        error=job.error,
    )

# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "storage": STORAGE}

# ---------- Characters ----------
@app.get("/characters", response_model=List[CharacterOut])
def list_characters():
    return [_character_out(c) for c in reference_store.characters]

@app.patch("/characters/{character_id}", response_model=CharacterOut)
def patch_character(character_id: str, payload: CharacterPatch):
    char = reference_store.patch_character(character_id, **payload.model_dump(exclude_unset=True))
    if not char:
        raise HTTPException(status_code=404, detail="character not found")
    return _character_out(char)

@app.post("/characters/{character_id}/default", response_model=CharacterOut)
def set_default_character(character_id: str):
    char = reference_store.set_default_character(character_id)
    if not char:
        raise HTTPException(status_code=404, detail="character not found")
    return _character_out(char)

@app.post("/characters/{character_id}/select", response_model=CharacterOut)
def select_character(character_id: str):
    char = reference_store.select_character(character_id)
    if not char:
        raise HTTPException(status_code=404, detail="character not found")
    return _character_out(char)

@app.post("/characters/{character_id}/images", response_model=CharacterOut)
def add_character_image(character_id: str, payload: ImageUpload):
    mime_type = payload.mime_type
    try:
        if payload.data.startswith("data:"):
            mime_type = payload.data[5:].split(";", 1)[0] or mime_type
            data = decode_data_uri(payload.data)
        else:
            data = base64.b64decode(payload.data, validate=True)
    except ValueError:
        raise HTTPException(status_code=422, detail="image data is not valid base64")
    try:
        image = reference_store.add_character_image(character_id, data, mime_type)
    except ReferenceLimitExceeded as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not image:
        raise HTTPException(status_code=404, detail="character not found")
    return _character_out(reference_store.get_character(character_id))

@app.delete("/characters/{character_id}/images/{image_id}", response_model=CharacterOut)
def remove_character_image(character_id: str, image_id: str):
    if not reference_store.remove_character_image(character_id, image_id):
        raise HTTPException(status_code=404, detail="image not found")
    return _character_out(reference_store.get_character(character_id))

# ---------- Scenes ----------
@app.get("/scenes", response_model=List[Scene])
def list_scenes():
    return reference_store.scenes

@app.post("/scenes", response_model=Scene)
def add_scene(payload: SceneCreate):
    try:
        return reference_store.add_scene(
            script=payload.script,
            prompt=payload.prompt,
            selected_character_ids=payload.selected_character_ids,
        )
    except UnknownCharacter as e:
        raise HTTPException(status_code=422, detail=str(e))

@app.patch("/scenes/{scene_id}", response_model=Scene)
def patch_scene(scene_id: str, payload: ScenePatch):
    try:
        scene = reference_store.patch_scene(scene_id, **payload.model_dump(exclude_unset=True, exclude_none=True))
    except UnknownCharacter as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not scene:
        raise HTTPException(status_code=404, detail="scene not found")
    return scene

@app.delete("/scenes/{scene_id}")
def remove_scene(scene_id: str):
    if not reference_store.remove_scene(scene_id):
        raise HTTPException(status_code=404, detail="scene not found")
    return {"ok": True}

@app.post("/scenes/generate-all", response_model=List[Scene])
async def generate_all(background: BackgroundTasks):
    if orchestrator.busy:
        raise HTTPException(status_code=409, detail="scene generation is already running")
    try:
        order = bootstrap_order(reference_store.scenes)
    except NoStyleAnchor as e:
        raise HTTPException(status_code=409, detail=str(e))
    background.add_task(_run_generate_all)
    return order

async def _run_generate_all():
    try:
        await orchestrator.generate_all()
    except NoStyleAnchor as e:
        # scenes were edited between the request and the run
        logger.warning(f"Generate all skipped: {e}")

@app.post("/scenes/{scene_id}/generate", response_model=Scene)
async def generate_scene(scene_id: str, background: BackgroundTasks, payload: Optional[GenerateSceneRequest] = None):
    payload = payload or GenerateSceneRequest()
    scene = reference_store.get_scene(scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="scene not found")
    if scene.is_generating:
        raise HTTPException(status_code=409, detail="scene is already generating")
    if orchestrator.busy:
        raise HTTPException(status_code=409, detail="scene generation is already running")
    background.add_task(
        orchestrator.generate_scene,
        scene_id,
        refine_prompt=payload.refine_prompt,
        use_existing_image=payload.use_existing_image,
    )
    return scene

@app.get("/export")
async def export_project(project_name: str):
    try:
        filename, data = await export_scenes(project_name, reference_store.scenes, storage)
    except ExportError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

# ---------- Jobs ----------
@app.post("/jobs", response_model=List[JobOut])
async def create_job(payload: CreateJobRequest):
    return _enqueue([payload.prompt], payload)

@app.post("/jobs/csv", response_model=List[JobOut])
async def create_jobs_from_csv(payload: CsvJobRequest):
    try:
        prompts = prompts_from_csv(payload.csv_text, payload.column)
    except InvalidJobRequest as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _enqueue(prompts, payload)

def _enqueue(prompts: List[str], params: JobParams) -> List[JobOut]:
    try:
        drafts = build_job_drafts(
            prompts,
            reference_store.characters,
            reference_store.selected_character(),
            input_type=params.input_type,
            model=params.model,
            aspect_ratio=params.aspect_ratio,
            output_count=params.output_count,
            context_prompt=params.context_prompt,
            creative_context=params.creative_context,
        )
    except InvalidJobRequest as e:
        raise HTTPException(status_code=422, detail=str(e))
    return [_job_out(j) for j in scheduler.enqueue(drafts)]

@app.get("/jobs", response_model=QueueOut)
def list_jobs():
    return QueueOut(processing=scheduler.active, jobs=[_job_out(j) for j in job_store.list()])

@app.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str):
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_out(job)

@app.post("/jobs/start", response_model=QueueOut)
async def start_jobs():
    scheduler.start()
    return QueueOut(processing=scheduler.active, jobs=[_job_out(j) for j in job_store.list()])

@app.post("/jobs/{job_id}/retry", response_model=JobOut)
async def retry_job(job_id: str):
    try:
        job = scheduler.retry(job_id)
    except InvalidJobTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_out(job)

@app.delete("/jobs/{job_id}")
async def remove_job(job_id: str):
    if not job_store.remove(job_id):
        raise HTTPException(status_code=404, detail="job not found")
    return {"ok": True}

@app.delete("/jobs")
async def clear_jobs():
    return {"removed": job_store.clear()}

@app.get("/jobs/{job_id}/video")
async def download_job_video(job_id: str):
    job = job_store.get(job_id)
    if not job or not job.result_url:
        raise HTTPException(status_code=404, detail="video not found")
    data = await storage.load(job.result_url)
    return Response(
        content=data,
        media_type="video/mp4",
        headers={"Content-Disposition": f'attachment; filename="{job_video_filename(job.id)}"'},
    )

# ---------- Streaming route ----------
@app.get("/files/{key:path}")
def stream_file(key: str):
    if key.startswith("local/"):
        local_key = key.split("/", 1)[1]
        file_path = storage.path_for(local_key) if not use_r2 else None
        if not file_path or not os.path.isfile(file_path):
            raise HTTPException(status_code=404, detail="file not found")
        media_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        return FileResponse(file_path, media_type=media_type)

    if use_r2:
        try:
            body, content_type = get_object_stream(key)
        except Exception:
            raise HTTPException(status_code=404, detail="object not found")

        def iter_chunks():
            for chunk in iter(lambda: body.read(1024 * 1024), b""):
                yield chunk

        return StreamingResponse(iter_chunks(), media_type=content_type or "application/octet-stream")

    raise HTTPException(status_code=404, detail="file not found")

# ---------- Index ----------
@app.get("/")
def index():
    return {"service": "storyreel-api", "storage": STORAGE, "public_base": settings.public_base_url}

# ---------- Debug (hide in prod) ----------
if settings.debug:
    @app.get("/debug/config")
    def debug_config():
        return {
            "STORAGE": STORAGE,
            "R2_ENDPOINT_URL": settings.r2_endpoint_url,
            "R2_PUBLIC_BASE": settings.r2_public_base,
            "R2_BUCKET": settings.r2_bucket,
            "IMAGE_MODEL": settings.image_model,
            "MAX_CONCURRENT_JOBS": settings.max_concurrent_jobs,
            "DB_URL": settings.database_url,
        }
