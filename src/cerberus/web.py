import aiohttp
import cachetools
from gidgethub import aiohttp as gh_aiohttp
from prometheus_client import CONTENT_TYPE_LATEST, core
from prometheus_client.exposition import generate_latest
from sanic import Request, Sanic, response
from sanic.log import logger

from cerberus import config
from cerberus.aggregator import CheckAggregator
from cerberus.github.api import API
from cerberus.github.auth import InstallationTokenManager, load_private_key
from cerberus.logger import configure_logging
from cerberus.metric import request_counter
from cerberus.webhook import process_webhook

USER_AGENT = "cerberus-mergeguard"


def make_github_client(session: aiohttp.ClientSession, cache=None) -> API:
    gh = gh_aiohttp.GitHubAPI(
        session,
        USER_AGENT,
        cache=cache,
        base_url=config.GITHUB_API_URL,
    )
    return API(gh)


def make_aggregator(api: API, **kwargs) -> CheckAggregator:
    private_key = load_private_key(config.GITHUB_PRIVATE_KEY_PATH)
    tokens = InstallationTokenManager(
        api,
        client_id=config.GITHUB_CLIENT_ID,
        private_key=private_key,
        expiry_margin=config.TOKEN_EXPIRY_MARGIN,
        refresh_threshold=config.TOKEN_REFRESH_THRESHOLD,
    )
    options = dict(
        client_id=config.GITHUB_CLIENT_ID,
        refresh_interval=config.PERIODIC_REFRESH,
        retention=config.ENTRY_RETENTION,
        eviction_interval=config.EVICTION_INTERVAL,
        retry_attempts=config.RETRY_ATTEMPTS,
        retry_backoff=config.RETRY_BACKOFF,
    )
    options.update(kwargs)
    return CheckAggregator(api, tokens, **options)


def create_app() -> Sanic:
    config.validate()
    configure_logging()

    app = Sanic("cerberus")
    app.update_config(config)

    app.ctx.cache = cachetools.LRUCache(maxsize=500)

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()
        api = make_github_client(app.ctx.aiohttp_session, cache=app.ctx.cache)
        app.ctx.aggregator = make_aggregator(api)
        app.ctx.aggregator.start()

        if not app.config.GITHUB_WEBHOOK_SECRET:
            logger.warning(
                "GITHUB_WEBHOOK_SECRET is not set, webhook signatures are NOT verified"
            )
        logger.info(
            "Ready, debounce window %.1fs", app.config.PERIODIC_REFRESH
        )

    @app.listener("before_server_stop")
    async def drain(app, loop):
        logger.info("Draining pending guard updates")
        await app.ctx.aggregator.shutdown(app.config.SHUTDOWN_DRAIN_TIMEOUT)

    @app.listener("after_server_stop")
    async def close_session(app, loop):
        await app.ctx.aiohttp_session.close()

    @app.on_request
    async def on_request(request: Request):
        if request.path == "/metrics":
            return
        request_counter.labels(path=request.path).inc()

    @app.get("/healthz")
    async def healthz(request):
        return response.json({"status": "ok"})

    @app.post("/webhook")
    async def github(request):
        logger.debug("Webhook received")
        status = await process_webhook(app, request.headers, request.body)
        return response.empty(status=status)

    @app.get("/metrics")
    async def metrics(request):
        data = generate_latest(core.REGISTRY)
        return response.raw(data, content_type=CONTENT_TYPE_LATEST)

    return app
