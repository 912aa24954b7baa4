"""
Controller Factory
Picks the stage controller that owns a project and re-enters saved ones
"""

import uuid
from typing import Any, Optional

from ..core.result import Result
from ..storage.gateway import StorageGateway
from .ai_flow import AiFlowController
from .base import BaseStageController, ProviderClients
from .narration_flow import NarrationFlowController
from .search_flow import SearchFlowController
from .state import FlowMode, ProjectData, SessionContext
from .store import ProjectStateStore
from .upload_flow import UploadFlowController

CONTROLLERS = {
    FlowMode.SEARCH: SearchFlowController,
    FlowMode.UPLOAD: UploadFlowController,
    FlowMode.AI: AiFlowController,
    FlowMode.NARRATION: NarrationFlowController,
}


def create_controller(
    project: ProjectData,
    store: ProjectStateStore,
    gateway: StorageGateway,
    clients: Optional[ProviderClients] = None,
    session: Optional[SessionContext] = None,
    **options: Any
) -> BaseStageController:
    """The project's mode decides its controller for good"""
    controller_class = CONTROLLERS[project.mode]
    return controller_class(project, store, gateway, clients=clients, session=session, **options)


async def resume(
    project_id: uuid.UUID,
    user_id: Optional[uuid.UUID],
    store: ProjectStateStore,
    gateway: StorageGateway,
    clients: Optional[ProviderClients] = None,
    **options: Any
) -> Result[BaseStageController]:
    """
    Load a saved project and hand it to its controller.

    The controller re-enters the persisted stage; processing stages
    restart their work.
    """
    loaded = await store.load(project_id, user_id)
    if not loaded.success:
        return loaded.propagate()

    project = loaded.data
    session = SessionContext(is_resuming=True, resume_project_id=project_id)
    controller = create_controller(project, store, gateway, clients=clients, session=session, **options)

    await controller.start()
    return Result.ok(controller)
