from fastapi import APIRouter, Depends, HTTPException

from transit_watch.engine.checkpoints import CheckpointStore, time_in_states
from transit_watch.routers.deps import get_repository
from transit_watch.timeutils import utcnow

router = APIRouter(prefix="/tracking", tags=["Tracking"])


@router.get("/{shipment_id}/timeline")
def get_timeline(shipment_id: str, repo=Depends(get_repository)):
    checkpoints = CheckpointStore(repo).history(shipment_id)
    if not checkpoints:
        raise HTTPException(status_code=404, detail="No checkpoints stored for shipment")
    return {
        "shipment_id": shipment_id,
        "checkpoints": [c.model_dump(mode="json") for c in checkpoints],
        "time_in_states": time_in_states(checkpoints, utcnow()),
    }
