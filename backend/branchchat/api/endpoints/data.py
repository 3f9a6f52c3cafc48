"""
Backup endpoints: export, import and clear the whole local store.
"""
from datetime import date

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from branchchat.api.deps import get_orchestrator, get_storage
from branchchat.schemas.export import ExportBundle
from branchchat.services.chat_storage import ChatStorage
from branchchat.services.stream_orchestrator import StreamOrchestrator


router = APIRouter(prefix="/api/data", tags=["Data"])


@router.get("/export")
async def export_data(storage: ChatStorage = Depends(get_storage)):
    """
    Download every conversation, message and settings row as one JSON document.
    API keys stay encrypted.
    """
    data = await storage.export_all_data()
    filename = f"ai-chat-data-{date.today().isoformat()}.json"
    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import")
async def import_data(
    bundle: ExportBundle,
    storage: ChatStorage = Depends(get_storage),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Replace the store's contents with an export document, atomically."""
    await orchestrator.shutdown()
    await storage.import_data(bundle)
    return {
        "conversations": len(bundle.conversations),
        "messages": len(bundle.messages),
        "settings": len(bundle.settings),
    }


@router.delete("")
async def clear_data(
    storage: ChatStorage = Depends(get_storage),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.shutdown()
    await storage.clear_all_data()
    return {"message": "All data cleared"}
