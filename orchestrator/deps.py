from fastapi import HTTPException, Request, status

from .pipeline import PlanPipeline


def get_pipeline(request: Request) -> PlanPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Plan pipeline not initialized",
        )
    return pipeline
