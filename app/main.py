import json
import logging
import os
from typing import Optional

from fastapi import FastAPI

from app.context import AppContext
from app.routers.live import create_live_router
from app.services.doc_export import LocalDocumentExporter
from app.services.finalizer import FinalizationPipeline
from app.services.live_session import SessionFactory
from app.services.llm.ollama_provider import is_ollama_reachable
from app.services.logging_setup import configure_logging, enable_crash_logging
from app.services.registry import ConnectionRegistry
from app.services.relay_config import parse_relay_config
from app.services.session_store import SessionStore
from app.services.summarization import SummarizationService
from app.services.transcription import TranscriptionBackend, create_backend


def _load_config(config_path: str, logger: logging.Logger) -> dict:
    if not os.path.exists(config_path):
        logger.info("Boot: config_path missing=%s", config_path)
        return {}
    logger.info("Boot: loading config_path=%s", config_path)
    with open(config_path, "r", encoding="utf-8") as config_file:
        config = json.load(config_file)
    logger.info("Boot: config keys=%s", sorted(config.keys()))
    return config


def create_app(
    *,
    cwd: Optional[str] = None,
    backend: Optional[TranscriptionBackend] = None,
    summarizer=None,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the relay app.

    ``backend`` and ``summarizer`` override the configured ones (tests pass
    fakes); everything else comes from data/config.json under ``cwd``.
    """
    cwd = cwd or os.getcwd()
    if configure_logs:
        configure_logging(os.path.join(cwd, "logs"))
        enable_crash_logging(os.path.join(cwd, "logs"))
    logger = logging.getLogger("relay.boot")
    logger.info("Boot: starting create_app cwd=%s", cwd)

    config = _load_config(AppContext.config_path_for(cwd), logger)
    ctx = AppContext.resolve(cwd, config, logger)
    ctx.ensure_dirs()
    logger.info("Boot: AppContext ready data_dir=%s", ctx.data_dir)

    relay_config = parse_relay_config(config)
    logger.info(
        "Boot: transcription provider=%s sample_rate=%s language=%s policy=%s enforce_entitlement=%s",
        relay_config.transcription.provider,
        relay_config.transcription.sample_rate,
        relay_config.transcription.language_code,
        relay_config.utterance_policy,
        relay_config.enforce_entitlement,
    )

    store = SessionStore(ctx.data_dir, hourly_rate=relay_config.billing.hourly_rate)
    exporter = LocalDocumentExporter(ctx.exports_dir, store.is_export_linked)

    if summarizer is None:
        summarizer = SummarizationService(ctx.config_path)
        provider_name = summarizer.selected_provider_name()
        if provider_name == "ollama":
            ollama_url = summarizer._get_provider_config("ollama").get("base_url") or "http://127.0.0.1:11434"
            if not is_ollama_reachable(ollama_url):
                logger.warning("Boot: Ollama selected but not reachable at %s", ollama_url)
        logger.info("Boot: summarizer provider=%s", provider_name)

    if backend is None:
        backend = create_backend(relay_config.transcription)
    logger.info("Boot: transcription backend=%s", type(backend).__name__)

    pipeline = FinalizationPipeline(
        data_dir=ctx.data_dir,
        summarizer=summarizer,
        exporter=exporter,
        persistence=store,
        billing=relay_config.billing,
    )
    factory = SessionFactory(
        backend=backend,
        identity=store,
        pipeline=pipeline,
        config=relay_config,
        recordings_dir=ctx.recordings_dir,
    )
    registry = ConnectionRegistry()

    app = FastAPI(title="Class Notes Relay", version="0.1.0")
    app.state.ctx = ctx
    app.state.config = relay_config
    app.state.store = store
    app.state.registry = registry

    app.include_router(create_live_router(factory, registry))
    logger.info("Boot: live router mounted")

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "version": app.version, "activeSessions": registry.active_count()}

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await registry.shutdown()
        logger.info("Shutdown: registry drained")

    logger.info("Boot: create_app complete")
    return app
