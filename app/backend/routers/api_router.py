from fastapi import APIRouter, Body, Query
from pydantic import BaseModel, Field

import app_service as svc
from config_models import AppConfigModel
from services.credentials import Credential


router = APIRouter(prefix="/api")


class CredentialCheckRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


@router.get("/config")
def get_config():
    return svc.get_config()


@router.post("/config")
def save_config(new_config: AppConfigModel = Body(...)):
    return svc.save_config(new_config.model_dump(mode="python"))


@router.get("/version")
def get_version():
    return svc.get_version()


@router.get("/cache-status")
def get_cache_status():
    return svc.get_cache_status()


@router.delete("/cache")
def clear_cache(year: int = Query(default=None, ge=2000, le=2100)):
    return svc.clear_cache(year=year)


@router.get("/dataset")
def get_dataset(
    year: int = Query(default=None, ge=2000, le=2100),
    margin: float = Query(default=None, ge=-100.0, le=100.0),
):
    return svc.get_dataset(year=year, margin=margin)


@router.post("/dataset/refresh")
def refresh_dataset(year: int = Query(default=None, ge=2000, le=2100)):
    return svc.refresh_dataset(year=year)


@router.get("/current-price")
def get_current_price():
    return svc.get_current_price()


@router.post("/credentials/check")
def check_credentials(payload: CredentialCheckRequest = Body(...)):
    return svc.check_credentials(Credential(username=payload.username, secret=payload.password))
