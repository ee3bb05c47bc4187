from fastapi import APIRouter

from app.schemas.simulation import DefaultScorePromptResponse
from app.services.scoring_prompts import get_default_score_prompt

router = APIRouter(prefix="/prompts", tags=["prompts"])


@router.get("/default-score", response_model=DefaultScorePromptResponse)
def default_score_prompt() -> DefaultScorePromptResponse:
    return DefaultScorePromptResponse(prompt=get_default_score_prompt())
