from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging, os, threading

from tender_drafting.enrichment import remember_answer
from tender_drafting.main import CancellationToken, TenderPipeline, build_default_pipeline
from tender_drafting.schemas import PipelineEnvelope

logger = logging.getLogger("tender_drafting.api")


def create_app(pipeline: Optional[TenderPipeline] = None) -> FastAPI:
    app = FastAPI(title="Tender drafting API")
    app.add_middleware(CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_methods=["*"], allow_headers=["*"])

    state: Dict[str, Any] = {"pipeline": pipeline}
    jobs: Dict[str, Dict[str, Any]] = {}  # tender_id -> {running, token, result}
    lock = threading.Lock()

    def get_pipeline() -> TenderPipeline:
        # Built on first use so importing the app doesn't open datastores
        with lock:
            if state["pipeline"] is None:
                state["pipeline"] = build_default_pipeline()
            return state["pipeline"]

    @app.post("/process-tender")
    async def process_tender(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        try:
            pipe = get_pipeline()
        except Exception as e:
            # A misconfigured service still answers with the envelope
            logger.exception("Could not build the drafting pipeline")
            tender_id = payload.get("tenderId") or payload.get("tender_id")
            envelope = PipelineEnvelope(
                tender_id=str(tender_id) if tender_id else None,
                error=str(e),
                message=f"Processing failed at validating: {e}",
            )
            return envelope.model_dump(mode="json")
        envelope: PipelineEnvelope = await run_in_threadpool(pipe.run, payload)
        return envelope.model_dump(mode="json")

    @app.post("/tenders/{tender_id}/process")
    def process_async(tender_id: str):
        pipe = get_pipeline()
        if pipe.store.get_tender(tender_id) is None:
            return {"accepted": False, "tender_id": tender_id, "error": "not found"}
        with lock:
            job = jobs.get(tender_id)
            if job and job["running"]:
                return {"accepted": False, "tender_id": tender_id, "error": "already processing"}
            token = CancellationToken()
            jobs[tender_id] = {"running": True, "token": token, "result": None}

        def run_job():
            try:
                envelope = pipe.run({"tenderId": tender_id}, cancel_token=token)
                jobs[tender_id]["result"] = envelope.model_dump(mode="json")
            finally:
                jobs[tender_id]["running"] = False

        threading.Thread(target=run_job, daemon=True).start()
        return {"accepted": True, "tender_id": tender_id}

    @app.post("/tenders/{tender_id}/cancel")
    def cancel(tender_id: str):
        job = jobs.get(tender_id)
        if not job or not job["running"]:
            return {"cancelled": False, "tender_id": tender_id}
        job["token"].cancel()
        return {"cancelled": True, "tender_id": tender_id}

    @app.delete("/tenders/{tender_id}/job")
    def delete_job(tender_id: str):
        with lock:
            job = jobs.get(tender_id)
            if job is None:
                return JSONResponse({"deleted": False, "error": "no job"}, status_code=404)
            if job["running"]:
                return JSONResponse({"deleted": False, "error": "still processing"}, status_code=409)
            del jobs[tender_id]
        return {"deleted": True, "tender_id": tender_id}

    @app.get("/tenders/{tender_id}/status")
    def get_status(tender_id: str):
        tender = get_pipeline().store.get_tender(tender_id)
        if tender is None:
            return JSONResponse({"error": "not found"}, status_code=404)
        job = jobs.get(tender_id, {})
        return {
            **tender.model_dump(mode="json", exclude={"segments"}),
            "running": bool(job.get("running")),
            "result": job.get("result"),
        }

    @app.get("/tenders/{tender_id}/responses")
    def get_responses(tender_id: str):
        pipe = get_pipeline()
        if pipe.store.get_tender(tender_id) is None:
            return JSONResponse({"error": "not found"}, status_code=404)
        return [r.model_dump(mode="json") for r in pipe.store.list_responses(tender_id)]

    @app.post("/memory")
    async def upsert_memory(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        question = (body.get("question") or "").strip() if isinstance(body, dict) else ""
        answer = (body.get("answer") or "").strip() if isinstance(body, dict) else ""
        company_id = body.get("company_id") if isinstance(body, dict) else None
        if not question or not answer or not company_id:
            return JSONResponse(
                {"success": False, "error": "company_id, question and answer are required"},
                status_code=400)

        pipe = get_pipeline()
        if pipe.embedder is None or pipe.memory is None:
            return JSONResponse(
                {"success": False, "error": "Answer memory is not configured"}, status_code=503)
        try:
            result = await run_in_threadpool(
                remember_answer, pipe.embedder, pipe.memory, company_id, question, answer,
                body.get("source_tender_id"))
        except Exception as e:
            logger.error("Failed to store memory: %s", e)
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        message = "Created new memory entry" if result["created"] else "Updated existing memory entry"
        return {"success": True, "message": message, **result}

    return app


app = create_app()
