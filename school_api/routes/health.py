from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from ..database import Database, get_database

router = APIRouter(prefix="/api", tags=["Health"])


@router.get("/health")
async def health(db: Database = Depends(get_database)):
    report = await db.health_check()
    code = status.HTTP_200_OK if report["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=jsonable_encoder(report))
