"""CRUD de Boxes.

Las escrituras pasan por el repositorio, que valida ``integrations`` y emite
los eventos de ciclo de vida MQTT. Los errores de dominio
(validación / no encontrado / conflicto) los traducen los exception
handlers de la app.
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Request, Response

from ..auth import require_api_key
from ..schemas import BoxCreateIn, BoxOut, BoxUpdateIn
from ..storage.box_repository import BoxRepository

router = APIRouter(prefix="/boxes", tags=["boxes"])


def get_repository(request: Request) -> BoxRepository:
    return request.app.state.repository


@router.post(
    "",
    response_model=BoxOut,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
def create_box(payload: BoxCreateIn, repo: BoxRepository = Depends(get_repository)) -> BoxOut:
    record = repo.create(payload.name, payload.integrations)
    return BoxOut(**record.to_dict())


@router.get("", response_model=List[BoxOut])
def list_boxes(repo: BoxRepository = Depends(get_repository)) -> List[BoxOut]:
    return [BoxOut(**record.to_dict()) for record in repo.list_boxes()]


@router.get("/{box_id}", response_model=BoxOut)
def get_box(box_id: str, repo: BoxRepository = Depends(get_repository)) -> BoxOut:
    return BoxOut(**repo.get(box_id).to_dict())


@router.patch(
    "/{box_id}",
    response_model=BoxOut,
    dependencies=[Depends(require_api_key)],
)
def update_box(
    box_id: str,
    payload: BoxUpdateIn,
    repo: BoxRepository = Depends(get_repository),
) -> BoxOut:
    record = repo.update(
        box_id,
        name=payload.name,
        integrations=payload.integrations,
        expected_revision=payload.revision,
    )
    return BoxOut(**record.to_dict())


@router.delete(
    "/{box_id}",
    status_code=204,
    dependencies=[Depends(require_api_key)],
)
def delete_box(box_id: str, repo: BoxRepository = Depends(get_repository)) -> Response:
    repo.delete(box_id)
    return Response(status_code=204)
