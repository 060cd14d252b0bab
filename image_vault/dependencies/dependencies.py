from fastapi import Request
from image_vault.image_service.orchestrator import UploadOrchestrator
from image_vault.image_service.proxy import RetrievalProxy
from image_vault.settings import Settings
from image_vault.storage.events import ChangeFeed
from image_vault.storage.s3 import S3Service

def get_s3_service(request: Request) -> S3Service:
    """Dependency provider for S3Service"""
    return request.app.state.s3

def get_orchestrator(request: Request) -> UploadOrchestrator:
    """Dependency provider for UploadOrchestrator"""
    return request.app.state.orchestrator

def get_proxy(request: Request) -> RetrievalProxy:
    """Dependency provider for RetrievalProxy"""
    return request.app.state.proxy

def get_feed(request: Request) -> ChangeFeed:
    """Dependency provider for ChangeFeed"""
    return request.app.state.feed

def get_config(request: Request) -> Settings:
    """Dependency provider for the settings the app was started with"""
    return request.app.state.settings
