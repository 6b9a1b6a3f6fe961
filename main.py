import logging
import math
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import DuplicateKeyError

from database import count_documents, create_document, ensure_indexes, get_documents, update_document
from schemas import VIDEO_ACTIVE, VIDEO_DELETED, UploadedImage, Video
from uploads import CHANNEL_DIRECTORIES, Channel, UploadError, UploadGate, UploadResult, load_policies

logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Uploaded files live under public/uploads/{images,videos}/ and are served as-is
UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", os.path.join("public", "uploads"))
os.makedirs(UPLOAD_ROOT, exist_ok=True)

gate = UploadGate(load_policies(UPLOAD_ROOT))
ensure_indexes()

app.mount("/uploads", StaticFiles(directory=UPLOAD_ROOT), name="uploads")


def get_pagination(page: Optional[str], limit: Optional[str], default_limit: int = 10):
    """Normalize page/limit query values; anything unusable falls back to the defaults."""

    def _positive(value, default):
        try:
            number = abs(int(value))
        except (TypeError, ValueError):
            return default
        return number or default

    page_number = _positive(page, 1)
    page_size = _positive(limit, default_limit)
    return page_number, page_size, (page_number - 1) * page_size


def media_url(request: Request, result: UploadResult) -> str:
    path = f"{CHANNEL_DIRECTORIES[result.channel]}/{result.storage_key}"
    return str(request.url_for("uploads", path=path))


async def accept_upload(channel: Channel, file: UploadFile) -> UploadResult:
    try:
        return await gate.handle(channel, file)
    except UploadError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


def serialize_video(doc: Dict[str, Any]) -> Dict[str, Any]:
    # Don't expose internal fields excessively
    return {
        "video_id": doc.get("video_id"),
        "user_id": doc.get("user_id"),
        "title": doc.get("title"),
        "description": doc.get("description"),
        "file_name": doc.get("file_name"),
        "original_name": doc.get("original_name"),
        "url": doc.get("url"),
        "mime_type": doc.get("mime_type"),
        "size": doc.get("size"),
        "views": doc.get("views", 0),
        "tags": doc.get("tags", []),
        "upload_time": doc.get("upload_time"),
    }


@app.get("/")
def read_root():
    return {"message": "Media backend running"}


@app.post("/api/images", response_model=UploadedImage)
async def upload_image(request: Request, file: UploadFile = File(...)):
    """Store an image (at most 5 MiB by default) and return where it can be fetched."""
    result = await accept_upload(Channel.IMAGE, file)
    return UploadedImage(
        file_name=result.storage_key,
        original_name=result.original_name,
        url=media_url(request, result),
        mime_type=result.mime_type,
        size=result.size,
    )


@app.post("/api/videos", response_model=dict)
async def upload_video(
    request: Request,
    file: UploadFile = File(...),
    video_id: Optional[str] = Form(None),
    user_id: Optional[int] = Form(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    """
    Upload a video file and store metadata in database.
    - Saves the file under public/uploads/videos/
    - Stores metadata (title, description, tags, size, mime type)
    - Removes the stored file again if the metadata cannot be saved
    """
    result = await accept_upload(Channel.VIDEO, file)

    tag_list = [t.strip() for t in (tags or "").split(",") if t.strip()]

    video_doc = Video(
        video_id=video_id or str(ObjectId()),
        user_id=user_id,
        title=title or result.original_name or "Untitled",
        description=description,
        file_name=result.storage_key,
        original_name=result.original_name,
        url=media_url(request, result),
        mime_type=result.mime_type,
        size=result.size,
        tags=tag_list,
        upload_time=datetime.now(timezone.utc),
        status=VIDEO_ACTIVE,
    )

    try:
        create_document("video", video_doc)
    except DuplicateKeyError:
        await gate.discard(Channel.VIDEO, result.storage_key)
        raise HTTPException(status_code=400, detail="videoId already exists")
    except Exception:
        logger.exception("Saving metadata for %s failed, removing the stored file", result.storage_key)
        await gate.discard(Channel.VIDEO, result.storage_key)
        raise

    return serialize_video(video_doc.model_dump())


@app.get("/api/videos", response_model=dict)
async def list_videos(
    q: Optional[str] = None,
    user_id: Optional[int] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
):
    """List active videos, newest first, with optional search in title/description/tags"""
    page_number, page_size, skip = get_pagination(page, limit)

    filter_dict: Dict[str, Any] = {"status": VIDEO_ACTIVE}
    if user_id is not None:
        filter_dict["user_id"] = user_id
    if q:
        # Case-insensitive literal substring search using $or
        regex = {"$regex": re.escape(q), "$options": "i"}
        filter_dict["$or"] = [{"title": regex}, {"description": regex}, {"tags": regex}]

    docs = get_documents(
        "video", filter_dict=filter_dict, limit=page_size, skip=skip, sort=[("upload_time", -1)]
    )
    total = count_documents("video", filter_dict=filter_dict)

    videos: List[Dict[str, Any]] = [serialize_video(d) for d in docs]
    return {
        "videos": videos,
        "pagination": {
            "page": page_number,
            "limit": page_size,
            "total": total,
            "pages": math.ceil(total / page_size),
        },
    }


@app.get("/api/videos/{video_id}", response_model=dict)
async def get_video(video_id: str):
    doc = update_document(
        "video", {"video_id": video_id, "status": VIDEO_ACTIVE}, inc={"views": 1}
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Video not found")
    return serialize_video(doc)


@app.delete("/api/videos/{video_id}", response_model=dict)
async def delete_video(video_id: str, user_id: Optional[int] = None):
    """Soft delete: the row stays with status 0 and a delete_time, the file is removed."""
    filter_dict: Dict[str, Any] = {"video_id": video_id, "status": VIDEO_ACTIVE}
    if user_id is not None:
        filter_dict["user_id"] = user_id

    doc = update_document(
        "video",
        filter_dict,
        changes={"status": VIDEO_DELETED, "delete_time": datetime.now(timezone.utc)},
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Video not found or already deleted")

    if not await gate.discard(Channel.VIDEO, doc["file_name"]):
        logger.warning("File %s of deleted video %s was already gone", doc["file_name"], video_id)
    logger.info("Soft deleted video %s", video_id)
    return {"message": "Video deleted", "video_id": video_id}


@app.get("/stream/{file_name}")
async def stream_file(file_name: str):
    """Serve the raw video file for the frontend <video> player"""
    docs = get_documents("video", filter_dict={"file_name": file_name, "status": VIDEO_ACTIVE}, limit=1)
    if not docs:
        raise HTTPException(status_code=404, detail="File not found")

    path = os.path.join(gate.policies[Channel.VIDEO].directory, docs[0]["file_name"])
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type=docs[0].get("mime_type") or "application/octet-stream")


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
