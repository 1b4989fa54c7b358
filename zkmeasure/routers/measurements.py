from __future__ import annotations

"""
Measurement routes

Endpoints:
  - POST /measurements        : multipart upload (image, startPoint, endPoint[, claimedDistance])
  - GET  /status/{id}         : polling view of one measurement
  - GET  /img/{id}            : the stored image

These are thin shims over `zkmeasure.services.measurements`. Collaborators
(config, stores, pipeline, metrics) are read from ``app.state``, where the
app lifespan put them.
"""

from typing import Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import Response

from zkmeasure.models.measurement import Measurement, MeasurementCreated
from zkmeasure.services import measurements as svc

router = APIRouter(tags=["measurements"])


@router.post(
    "/measurements",
    summary="Submit a measurement for proving and attestation",
    response_model=MeasurementCreated,
)
async def post_measurement(
    request: Request,
    image: Optional[UploadFile] = File(None, description="JPEG image of the measured object."),
    start_point: Optional[str] = Form(None, alias="startPoint", description='JSON {"x","y","z"} in millimetres.'),
    end_point: Optional[str] = Form(None, alias="endPoint", description='JSON {"x","y","z"} in millimetres.'),
    claimed_distance: Optional[str] = Form(
        None, alias="claimedDistance", description="Claimed distance in whole millimetres (optional)."
    ),
) -> MeasurementCreated:
    """
    Validate the upload, persist a `Pending` measurement and schedule its
    pipeline run. Returns before any proving starts.
    """
    state = request.app.state
    data = await image.read(state.config.max_image_bytes + 1) if image is not None else None
    data = svc.check_image(data, max_bytes=state.config.max_image_bytes)
    p1 = svc.parse_point("startPoint", start_point)
    p2 = svc.parse_point("endPoint", end_point)
    claimed = svc.parse_claimed_distance(claimed_distance)

    record = await svc.create_measurement(
        store=state.store,
        artifacts=state.artifacts,
        pipeline=state.pipeline,
        image=data,
        start_point=p1,
        end_point=p2,
        claimed_distance_mm=claimed,
        metrics=getattr(state, "metrics", None),
    )
    return MeasurementCreated(
        measurement_id=record.id,
        url=str(request.url_for("get_status", measurement_id=record.id)),
    )


@router.get(
    "/status/{measurement_id}",
    name="get_status",
    summary="Current state of a measurement",
    response_model=Measurement,
    response_model_exclude_none=True,
)
async def get_status(measurement_id: str, request: Request) -> Measurement:
    return await svc.get_measurement(request.app.state.store, measurement_id)


@router.get("/img/{measurement_id}", summary="Stored measurement image", response_class=Response)
async def get_image(measurement_id: str, request: Request) -> Response:
    state = request.app.state
    data = await svc.get_image(state.store, state.artifacts, measurement_id)
    return Response(
        content=data,
        media_type="image/jpeg",
        headers={"Content-Disposition": f'inline; filename="{measurement_id}.jpg"'},
    )


def get_router() -> APIRouter:
    return router
