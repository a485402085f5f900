"""Analysis routes."""

import structlog
from fastapi import APIRouter, HTTPException

from dosscan.analysis.ast_parser import ParseError
from dosscan.models import AnalysisRequest, AnalysisResponse
from dosscan.pipeline.analyzer import analyze_ast, analyze_source

logger = structlog.get_logger()

router = APIRouter()


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze(request: AnalysisRequest) -> AnalysisResponse:
    """Analyze Solidity source or a solc AST and return one report per contract."""
    try:
        if request.ast is not None:
            reports = analyze_ast(request.ast, request.source_name)
        else:
            reports = await analyze_source(
                request.source,
                request.source_name,
                solc_version=request.solc_version,
            )
    except ParseError as e:
        logger.warning("api_parse_failed", source_name=request.source_name, error=e.message)
        raise HTTPException(status_code=422, detail=e.to_dict()) from e

    return AnalysisResponse(reports=reports)
