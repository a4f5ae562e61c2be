import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..chain import ChainReader
from ..config import Settings
from ..errors import DecodeError, ModelUnavailable, VerificationError
from ..face import FaceEmbeddingExtractor
from ..gate import RegistrationGate, RiskAssessment
from ..hashing import compute_hash_variants, content_hash, load_image
from ..identity import IdentityVerifier
from ..metadata import MetadataResolver
from ..registry import DuplicateMatch, OnChainDuplicateScanner
from ..whitelist import WhitelistMatcher

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """Process-wide, read-only collaborators built once from Settings."""

    settings: Settings
    matcher: WhitelistMatcher
    scanner: OnChainDuplicateScanner | None
    extractor: FaceEmbeddingExtractor | None
    verifier: IdentityVerifier
    gate: RegistrationGate


def build_context(settings: Settings) -> Context:
    scanner = None
    if settings.rpc_url:
        chain = ChainReader(settings.rpc_url, timeout=settings.http_timeout)
        resolver = MetadataResolver.from_settings(settings)
        scanner = OnChainDuplicateScanner.from_settings(settings, chain, resolver)
    extractor = FaceEmbeddingExtractor.from_settings(settings)
    return Context(
        settings=settings,
        matcher=WhitelistMatcher.from_settings(settings),
        scanner=scanner,
        extractor=extractor,
        verifier=IdentityVerifier.from_settings(settings, extractor),
        gate=RegistrationGate(),
    )


@lru_cache(maxsize=1)
def get_context() -> Context:
    return build_context(Settings.from_env())


app = FastAPI(title="originguard: duplicate & identity checks")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unexpected_error(request, exc: Exception):
    logger.exception("[API] Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc)})


def _decode_or_400(data: bytes):
    try:
        return load_image(data)
    except DecodeError as e:
        logger.info("[API] Rejected upload: %s", e)
        raise HTTPException(status_code=400, detail=str(e))


async def _count_faces(ctx: Context, img) -> int | None:
    if ctx.extractor is None:
        return None
    try:
        return await asyncio.to_thread(ctx.extractor.count_faces, img)
    except ModelUnavailable as e:
        logger.warning("[API] Face count unavailable: %s", e)
        return None


async def _duplicate_check(ctx: Context, data: bytes) -> DuplicateMatch:
    collection = ctx.settings.collection
    if ctx.scanner is None or not collection:
        return DuplicateMatch.degraded("no collection configured")
    return await ctx.scanner.check_duplicate(collection, content_hash(data), ctx.settings.dupcheck_timeout)


@app.get("/")
async def root():
    return {
        "status": "ok",
        "message": "originguard API is running",
        "endpoints": ["/compute-hash", "/whitelist-check", "/duplicate-check", "/verify-identity", "/assess"],
    }


@app.post("/compute-hash")
async def compute_hash(file: UploadFile = File(...), ctx: Context = Depends(get_context)):
    """dHash variant family plus the exact content hash of the upload."""
    data = await file.read()
    img = _decode_or_400(data)
    variants = await asyncio.to_thread(compute_hash_variants, img, ctx.settings.dhash_size, ctx.settings.center_crop)
    digest = content_hash(data)
    logger.info("[HASH] Computed dHash %s, content hash %s...", variants[0].hex, digest[:12])
    return {
        "status": "ok",
        "dhash": {v.variant.value: v.hex for v in variants},
        "content_hash": digest,
        "hash_size": ctx.settings.dhash_size,
    }


@app.post("/whitelist-check")
async def whitelist_check(file: UploadFile = File(...), ctx: Context = Depends(get_context)):
    img = _decode_or_400(await file.read())
    decision = await asyncio.to_thread(ctx.matcher.check_image, img)
    return dataclasses.asdict(decision)


@app.post("/duplicate-check")
async def duplicate_check(file: UploadFile = File(...), ctx: Context = Depends(get_context)):
    """Exact content-hash lookup against prior registrations in the collection."""
    data = await file.read()
    _decode_or_400(data)
    match = await _duplicate_check(ctx, data)
    return dataclasses.asdict(match)


@app.post("/verify-identity")
async def verify_identity(
    reference: UploadFile = File(...),
    capture: UploadFile = File(...),
    ctx: Context = Depends(get_context),
):
    ref_img = _decode_or_400(await reference.read())
    cap_img = _decode_or_400(await capture.read())
    try:
        result = await asyncio.to_thread(ctx.verifier.verify, ref_img, cap_img)
    except VerificationError as e:
        logger.error("[IDENTITY] Verification failed: %s", e)
        raise HTTPException(status_code=500, detail={"error": str(e)})
    return {**dataclasses.asdict(result), "verified": result.verified}


@app.post("/assess")
async def assess(
    file: UploadFile = File(...),
    risk_label: str | None = Form(None),
    risk_confidence: float = Form(0.0),
    ai_generated: bool = Form(False),
    ctx: Context = Depends(get_context),
):
    """Whitelist + duplicate + face count, folded into proceed / review / block."""
    data = await file.read()
    img = _decode_or_400(data)

    whitelist, duplicate, faces = await asyncio.gather(
        asyncio.to_thread(ctx.matcher.check_image, img),
        _duplicate_check(ctx, data),
        _count_faces(ctx, img),
    )
    risk = None
    if risk_label:
        risk = RiskAssessment(label=risk_label, confidence=risk_confidence, ai_generated=ai_generated)

    decision = ctx.gate.evaluate(whitelist, duplicate, faces, risk)
    return dataclasses.asdict(decision)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
