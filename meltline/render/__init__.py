from meltline.render.engine_gateway import MeltGateway, RenderEngineGateway
from meltline.render.job_orchestrator import RenderJob, RenderJobOrchestrator, RenderProgress, RenderStatus
from meltline.render.mlt_compiler import (
    CompiledProgram,
    compile_program,
    compile_timeline,
    compile_timeline_for_range,
    validate_program_structure,
)

__all__ = [
    "CompiledProgram",
    "MeltGateway",
    "RenderEngineGateway",
    "RenderJob",
    "RenderJobOrchestrator",
    "RenderProgress",
    "RenderStatus",
    "compile_program",
    "compile_timeline",
    "compile_timeline_for_range",
    "validate_program_structure",
]
