import pytest
import json
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from image_vault import exceptions


@pytest.mark.asyncio
async def test_api_exception_handler():
    exc = exceptions.ImageNotFoundException("123")
    request = Request(scope={"type": "http"})
    response: JSONResponse = await exceptions.api_exception_handler(request, exc)

    assert response.status_code == 404
    # JSONResponse body is bytes, need to decode and parse
    body = json.loads(response.body.decode())
    assert body == {"error": "Not found", "detail": "Image with ID '123' not found."}


@pytest.mark.asyncio
async def test_upstream_exception_keeps_summary_and_detail():
    exc = exceptions.UpstreamException("AccessDenied", error="Failed to delete object")
    request = Request(scope={"type": "http"})
    response: JSONResponse = await exceptions.api_exception_handler(request, exc)

    assert response.status_code == 500
    body = json.loads(response.body.decode())
    assert body == {"error": "Failed to delete object", "detail": "AccessDenied"}


@pytest.mark.asyncio
async def test_validation_exception_handler_names_missing_fields():
    exc = RequestValidationError([
        {"loc": ("body", "fileName"), "msg": "Field required", "type": "missing"},
        {"loc": ("body", "userId"), "msg": "Field required", "type": "missing"},
    ])
    request = Request(scope={"type": "http"})
    response: JSONResponse = await exceptions.validation_exception_handler(request, exc)

    assert response.status_code == 400
    body = json.loads(response.body.decode())
    assert "fileName" in body["detail"]
    assert "userId" in body["detail"]


@pytest.mark.asyncio
async def test_http_exception_handler():
    exc = HTTPException(status_code=403, detail="Forbidden")
    request = Request(scope={"type": "http"})
    response: JSONResponse = await exceptions.http_exception_handler(request, exc)

    assert response.status_code == 403
    body = json.loads(response.body.decode())
    assert body == {"detail": "Forbidden"}


@pytest.mark.asyncio
async def test_generic_exception_handler():
    exc = ValueError("Something went wrong")
    request = Request(scope={"type": "http"})
    response: JSONResponse = await exceptions.generic_exception_handler(request, exc)

    assert response.status_code == 500
    body = json.loads(response.body.decode())
    assert body["error"] == "An unexpected error occurred."


def test_custom_exceptions_inherit_api_exception():
    exc = exceptions.InvalidTypeException("text/plain")
    assert isinstance(exc, exceptions.ValidationException)
    assert isinstance(exc, exceptions.APIException)
    assert exc.status_code == 400
    assert "text/plain" in str(exc)


def test_forbidden_is_a_caller_error():
    exc = exceptions.ForbiddenException()
    assert exc.status_code == 400
    assert "presigned" in exc.detail


def test_missing_field_echoes_field_names():
    exc = exceptions.MissingFieldException("fileName", "userId")
    assert exc.fields == ["fileName", "userId"]
    assert "fileName, userId" in exc.detail
