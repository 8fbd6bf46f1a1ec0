from fastapi import APIRouter

from config import PROVIDERS
from models import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(ok=True, providers=list(PROVIDERS))
