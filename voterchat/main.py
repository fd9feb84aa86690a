import logging
from contextlib import asynccontextmanager
from typing import List

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from voterchat.config import Settings, configure_logging
from voterchat.errors import BillNotFoundError, VoterChatError
from voterchat.models.database import make_engine
from voterchat.models.schemas import (
    BillMatch,
    BillsQueryRequest,
    ExecuteSelectsRequest,
    ExecuteSqlRequest,
    LookupValuesRequest,
    SchemaCandidatesRequest,
    SimilaritySearch,
    SimilarValuesRequest,
)
from voterchat.services.bill_service import BillService
from voterchat.services.bills_query import FAILED_MESSAGE, BillsQueryService
from voterchat.services.data_importer import build_bill_embedder
from voterchat.services.embedding_service import build_embedding_service
from voterchat.services.lookup_values import fetch_lookup_values, list_lookup_keys
from voterchat.services.query_gate import QueryGate, SqlExecutor
from voterchat.services.schema_retrieval import SchemaRetriever

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engines = []
    embedders = []

    if settings.database.bills_url:
        bills_engine = make_engine(settings.database.bills_url)
        bill_embedder = build_bill_embedder(settings)
        engines.append(bills_engine)
        embedders.append(bill_embedder)
        app.state.bill_service = BillService(bills_engine, bill_embedder)
        app.state.bills_gate = QueryGate(
            SqlExecutor(bills_engine), settings.query.token_limit, settings.query.tokenizer_model, name="bills"
        )
        if settings.query.bills_openai_api_key:
            app.state.bills_query = BillsQueryService(
                app.state.bills_gate,
                api_key=settings.query.bills_openai_api_key,
                model=settings.query.bills_query_model,
                base_url=settings.query.bills_openai_base_url,
            )
        else:
            logger.warning("BILLS_OPENAI_API_KEY / OPENAI_API_KEY not set; bills-query tool is disabled")
    else:
        logger.warning("BILLS_DATABASE_URL is not set; bill endpoints are disabled")

    if settings.database.voter_url and settings.database.voter_schema:
        voter_engine = make_engine(settings.database.voter_url)
        voter_embedder = build_embedding_service(settings.voter_embedding)
        engines.append(voter_engine)
        embedders.append(voter_embedder)
        app.state.schema_retriever = SchemaRetriever(voter_engine, settings.database.voter_schema, voter_embedder)
        app.state.voter_gate = QueryGate(
            SqlExecutor(voter_engine), settings.query.token_limit, settings.query.tokenizer_model, name="voter"
        )
    else:
        logger.warning("VOTERDATA_DATABASE_URL / VOTERDATA_SCHEMA not set; voter tools are disabled")

    yield

    for embedder in embedders:
        await embedder.aclose()
    for engine in engines:
        await engine.dispose()


app = FastAPI(
    title="Voter Chat Data API",
    description="Retrieval and read-only query tools over legislative and voter registration data",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} is not configured")
    return service


def get_bill_service(request: Request) -> BillService:
    return _service(request, "bill_service")


def get_schema_retriever(request: Request) -> SchemaRetriever:
    return _service(request, "schema_retriever")


def get_voter_gate(request: Request) -> QueryGate:
    return _service(request, "voter_gate")


def get_bills_gate(request: Request) -> QueryGate:
    return _service(request, "bills_gate")


def get_bills_query(request: Request) -> BillsQueryService:
    return _service(request, "bills_query")


@app.get("/")
async def root():
    return {"message": "Voter Chat Data API"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Voter tools
@app.post("/api/v1/tools/schema-candidates")
async def fetch_schema_candidates(body: SchemaCandidatesRequest,
                                  retriever: SchemaRetriever = Depends(get_schema_retriever)):
    try:
        candidates = await retriever.fetch_schema_candidates(body.userInput, body.topK)
    except (ValueError, VoterChatError) as e:
        return {"error": str(e)}
    except Exception as e:
        logger.error("Error fetching table DDLs: %s", e)
        return {"error": "Something went wrong, so I could not process your request."}
    return {"candidates": candidates}


@app.post("/api/v1/tools/similar-values")
async def find_possible_similar_values(body: SimilarValuesRequest,
                                       retriever: SchemaRetriever = Depends(get_schema_retriever)):
    try:
        values = await retriever.find_possible_similar_values(body.userInput, body.tableDdl, body.topK, body.thres)
    except (ValueError, VoterChatError) as e:
        return {"error": str(e)}
    except Exception as e:
        logger.error("Error during similarity search: %s", e)
        return {"error": "Something went wrong, so I could not process your request."}
    return {"possibleValues": values}


@app.post("/api/v1/tools/execute-selects")
async def execute_selects(body: ExecuteSelectsRequest, gate: QueryGate = Depends(get_voter_gate)):
    return await gate.execute_read_only_queries(body.selects)


@app.post("/api/v1/tools/execute-sql")
async def execute_sql(body: ExecuteSqlRequest, gate: QueryGate = Depends(get_bills_gate)):
    return await gate.execute_read_only_queries(body.queries)


@app.post("/api/v1/tools/bills-query")
async def bills_query(body: BillsQueryRequest, service: BillsQueryService = Depends(get_bills_query)):
    try:
        return await service.answer(body.query)
    except (ValueError, VoterChatError) as e:
        return {"error": str(e)}
    except Exception as e:
        logger.error("Error in bills query tool: %s", e)
        return {"error": FAILED_MESSAGE}


@app.get("/api/v1/tools/lookup-keys")
async def lookup_keys():
    return list_lookup_keys()


@app.post("/api/v1/tools/lookup-values")
async def lookup_values(body: LookupValuesRequest):
    return fetch_lookup_values(body.keys)


# Bill endpoints
@app.post("/api/v1/bills/search/similar", response_model=List[BillMatch])
async def find_similar_bills(search: SimilaritySearch, bill_service: BillService = Depends(get_bill_service)):
    try:
        return await bill_service.find_similar_bills(search.query, search.threshold, search.limit)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/api/v1/bills/{bill_id}/similar", response_model=List[BillMatch])
async def find_bills_similar_to(bill_id: int, limit: int = 5,
                                bill_service: BillService = Depends(get_bill_service)):
    try:
        return await bill_service.find_bills_similar_to(bill_id, limit)
    except BillNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/api/v1/bills/category/{category}", response_model=List[BillMatch])
async def find_bills_by_category(category: str, limit: int = 10,
                                 bill_service: BillService = Depends(get_bill_service)):
    try:
        return await bill_service.find_bills_by_category(category, limit)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


if __name__ == "__main__":
    uvicorn.run("voterchat.main:app", host="0.0.0.0", port=8000, reload=True)
