"""
Import endpoints: synchronous and queued imports, batch imports and dry-run
validation.
"""
import json
import logging
import mimetypes
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from starlette.concurrency import run_in_threadpool

from importhub.api.dependencies import get_services
from importhub.api.schemas.shared import ImportStatsResponse, QueuedJobResponse
from importhub.domain.imports.importers.assets import AssetUpload
from importhub.domain.imports.options import BatchImportOptions
from importhub.domain.imports.orchestrator import BatchImportInputs, FileInput
from importhub.domain.imports.results import BatchImportResult, EntityImportResult
from importhub.services import Services

router = APIRouter(prefix="/import", tags=["imports"])

logger = logging.getLogger(__name__)

TABULAR_ENTITIES = ("accounts", "products", "opportunities")


def _parse_options(raw: Optional[str], field_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        options = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in {field_name}: {exc.msg}")
    if not isinstance(options, dict):
        raise HTTPException(status_code=400, detail=f"{field_name} must be a JSON object")
    return options


def _require_tabular(entity: str) -> None:
    if entity not in TABULAR_ENTITIES:
        raise HTTPException(status_code=404, detail=f"Unknown import entity: {entity}")


async def _read_file(upload: Optional[UploadFile], options: Dict[str, Any]) -> Optional[FileInput]:
    if upload is None:
        return None
    content = await upload.read()
    return FileInput(file_name=upload.filename or "upload", content=content, options=options)


async def _read_assets(uploads: Optional[List[UploadFile]]) -> List[AssetUpload]:
    assets = []
    for upload in uploads or []:
        content = await upload.read()
        file_name = upload.filename or "document"
        mime_type = upload.content_type
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        assets.append(AssetUpload(file_name=file_name, content=content, mime_type=mime_type))
    return assets


async def _batch_inputs(
    accounts: Optional[UploadFile],
    products: Optional[UploadFile],
    opportunities: Optional[UploadFile],
    assets: Optional[List[UploadFile]],
    accounts_options_json: Optional[str],
    products_options_json: Optional[str],
    opportunities_options_json: Optional[str],
    assets_options_json: Optional[str],
) -> BatchImportInputs:
    return BatchImportInputs(
        accounts=await _read_file(accounts, _parse_options(accounts_options_json, "accounts_options_json")),
        products=await _read_file(products, _parse_options(products_options_json, "products_options_json")),
        opportunities=await _read_file(
            opportunities, _parse_options(opportunities_options_json, "opportunities_options_json")
        ),
        assets=await _read_assets(assets),
        asset_options=_parse_options(assets_options_json, "assets_options_json"),
    )


@router.post("/batch", response_model=BatchImportResult)
async def batch_import_endpoint(
    accounts: Optional[UploadFile] = File(None),
    products: Optional[UploadFile] = File(None),
    opportunities: Optional[UploadFile] = File(None),
    assets: Optional[List[UploadFile]] = File(None),
    options_json: Optional[str] = Form(None),
    accounts_options_json: Optional[str] = Form(None),
    products_options_json: Optional[str] = Form(None),
    opportunities_options_json: Optional[str] = Form(None),
    assets_options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """
    Import several entity files in one run and return the aggregate result.

    Parameters:
    - accounts / products / opportunities: tabular files (CSV or Excel)
    - assets: any number of document uploads
    - options_json: batch options (process_order, continue_on_error, ...)
    - <entity>_options_json: options for one entity importer
    """
    inputs = await _batch_inputs(
        accounts, products, opportunities, assets,
        accounts_options_json, products_options_json, opportunities_options_json, assets_options_json,
    )
    options = _parse_options(options_json, "options_json")
    logger.info("Received /import/batch request for %s", inputs.present())
    return await run_in_threadpool(services.orchestrator.execute_batch_import, inputs, options)


@router.post("/batch/queue", response_model=QueuedJobResponse, status_code=202)
async def queue_batch_import_endpoint(
    accounts: Optional[UploadFile] = File(None),
    products: Optional[UploadFile] = File(None),
    opportunities: Optional[UploadFile] = File(None),
    assets: Optional[List[UploadFile]] = File(None),
    options_json: Optional[str] = Form(None),
    accounts_options_json: Optional[str] = Form(None),
    products_options_json: Optional[str] = Form(None),
    opportunities_options_json: Optional[str] = Form(None),
    assets_options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    inputs = await _batch_inputs(
        accounts, products, opportunities, assets,
        accounts_options_json, products_options_json, opportunities_options_json, assets_options_json,
    )
    present = inputs.present()
    if not present:
        raise HTTPException(status_code=400, detail="No import files provided")
    raw_options = _parse_options(options_json, "options_json")
    try:
        options = BatchImportOptions.model_validate(raw_options)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    stages = [entity for entity in options.process_order if entity in present]
    job_id = services.queue.submit("batch", inputs, options.model_dump(), stages=stages)
    return QueuedJobResponse(success=True, job_id=job_id, status="QUEUED", message="Batch import queued")


@router.post("/validate/{entity}", response_model=EntityImportResult)
async def validate_import_endpoint(
    entity: str,
    file: UploadFile = File(...),
    options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """Dry run: parse and validate a file without writing anything."""
    _require_tabular(entity)
    content = await file.read()
    options = _parse_options(options_json, "options_json")
    importer = services.importers[entity]
    return await run_in_threadpool(importer.validate_file, content, file.filename or "upload", options)


@router.get("/stats", response_model=ImportStatsResponse)
async def import_stats_endpoint(
    since: Optional[datetime] = None,
    services: Services = Depends(get_services),
):
    stats = await run_in_threadpool(services.orchestrator.import_stats, since)
    return ImportStatsResponse(success=True, **stats)


@router.post("/assets", response_model=EntityImportResult)
async def import_assets_endpoint(
    files: List[UploadFile] = File(...),
    options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    uploads = await _read_assets(files)
    options = _parse_options(options_json, "options_json")
    return await run_in_threadpool(services.importers["assets"].import_assets, uploads, options)


@router.post("/assets/queue", response_model=QueuedJobResponse, status_code=202)
async def queue_assets_endpoint(
    files: List[UploadFile] = File(...),
    options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    uploads = await _read_assets(files)
    options = _parse_options(options_json, "options_json")
    job_id = services.queue.submit("assets", uploads, options)
    return QueuedJobResponse(success=True, job_id=job_id, status="QUEUED", message="Asset import queued")


@router.post("/{entity}", response_model=EntityImportResult)
async def import_entity_endpoint(
    entity: str,
    file: UploadFile = File(...),
    options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """Import one accounts, products or opportunities file synchronously."""
    _require_tabular(entity)
    content = await file.read()
    options = _parse_options(options_json, "options_json")
    logger.info("Received /import/%s request for file '%s'", entity, file.filename)
    importer = services.importers[entity]
    return await run_in_threadpool(importer.import_file, content, file.filename or "upload", options)


@router.post("/{entity}/queue", response_model=QueuedJobResponse, status_code=202)
async def queue_entity_endpoint(
    entity: str,
    file: UploadFile = File(...),
    options_json: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    _require_tabular(entity)
    options = _parse_options(options_json, "options_json")
    payload = await _read_file(file, options)
    job_id = services.queue.submit(entity, payload, options)
    return QueuedJobResponse(success=True, job_id=job_id, status="QUEUED", message=f"{entity} import queued")
