from typing import Annotated

from fastapi import Depends

from meltline.render.job_orchestrator import RenderJobOrchestrator
from meltline.render.service import get_orchestrator

Orchestrator = Annotated[RenderJobOrchestrator, Depends(get_orchestrator)]
