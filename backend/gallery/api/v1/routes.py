from fastapi import APIRouter

from gallery.api.v1 import images

api_router = APIRouter()

api_router.include_router(images.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
