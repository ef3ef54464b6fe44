from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import logging

from labeldelay.config import GitHubConfig
from labeldelay.error_reporting import ErrorReporter, NullErrorReporter
from labeldelay.events import WebhookEvent
from labeldelay.handlers import WebhookHandlers
from labeldelay.observability import log_event, log_warning_event, logging_delivery_context


LOGGER = logging.getLogger("labeldelay.router")

Handler = Callable[[WebhookEvent], None]
Middleware = Callable[[WebhookEvent, Handler], None]


@dataclass(frozen=True)
class Route:
    name: str
    events: frozenset[str]
    handler: Handler
    middleware: tuple[Middleware, ...] = ()

    def matches(self, event: WebhookEvent) -> bool:
        return event.qualified_name in self.events

    def invoke(self, event: WebhookEvent) -> None:
        chain = self.handler
        for middleware in reversed(self.middleware):
            chain = _bind(middleware, chain)
        chain(event)


@dataclass(frozen=True)
class DispatchResult:
    handled: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class EventRouter:
    error_reporter: ErrorReporter = field(default_factory=NullErrorReporter)
    _routes: list[Route] = field(default_factory=list)

    def on(
        self,
        events: Iterable[str],
        handler: Handler,
        *,
        name: str,
        middleware: Iterable[Middleware] = (),
    ) -> None:
        self._routes.append(
            Route(
                name=name,
                events=frozenset(events),
                handler=handler,
                middleware=tuple(middleware),
            )
        )

    @property
    def routes(self) -> tuple[Route, ...]:
        return tuple(self._routes)

    def dispatch(self, event: WebhookEvent) -> DispatchResult:
        handled: list[str] = []
        failed: list[str] = []
        with logging_delivery_context(event.delivery_id):
            for route in self._routes:
                if not route.matches(event):
                    continue
                try:
                    route.invoke(event)
                except Exception as exc:  # noqa: BLE001
                    failed.append(route.name)
                    log_warning_event(
                        LOGGER,
                        "webhook_failed",
                        event_name=event.qualified_name,
                        route=route.name,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    self.error_reporter.report(
                        exc,
                        owner=event.account_login,
                        context={"event": event.qualified_name, "route": route.name},
                    )
                    continue
                handled.append(route.name)
            if not handled and not failed:
                log_event(LOGGER, "webhook_ignored", event_name=event.qualified_name)
        return DispatchResult(handled=tuple(handled), failed=tuple(failed))


def entitlement_middleware(github_config: GitHubConfig) -> Middleware:
    def check(event: WebhookEvent, call_next: Handler) -> None:
        owner = event.account_login or ""
        if not github_config.allows(owner):
            log_event(
                LOGGER,
                "entitlement_denied",
                event_name=event.qualified_name,
                account=owner or "<unknown>",
            )
            return
        call_next(event)

    return check


def logging_middleware(event: WebhookEvent, call_next: Handler) -> None:
    repository = event.payload.get("repository")
    repo_full_name = repository.get("full_name") if isinstance(repository, dict) else None
    log_event(
        LOGGER,
        "webhook_received",
        event_name=event.qualified_name,
        account=event.account_login or "<unknown>",
        repo_full_name=repo_full_name or "<none>",
    )
    call_next(event)


def build_router(
    handlers: WebhookHandlers,
    *,
    github_config: GitHubConfig,
    error_reporter: ErrorReporter | None = None,
) -> EventRouter:
    router = EventRouter(error_reporter=error_reporter or NullErrorReporter())
    gated = (entitlement_middleware(github_config), logging_middleware)
    logged = (logging_middleware,)

    # Issues and pull requests share the issue comment and label surface.
    router.on(
        (
            "issues.labeled",
            "issues.unlabeled",
            "pull_request.labeled",
            "pull_request.unlabeled",
        ),
        handlers.schedule_comment,
        name="schedule_comment",
        middleware=gated,
    )
    router.on(
        ("issues.labeled", "issues.unlabeled"),
        handlers.schedule_close,
        name="schedule_close",
        middleware=gated,
    )
    router.on(
        (
            "pull_request.labeled",
            "pull_request.unlabeled",
            "pull_request.synchronize",
            "pull_request_review.submitted",
        ),
        handlers.schedule_merge,
        name="schedule_merge",
        middleware=gated,
    )
    router.on(
        ("issue_comment.created", "issue_comment.edited"),
        handlers.handle_comment_command,
        name="comment_command",
        middleware=gated,
    )
    router.on(
        ("pull_request.closed",),
        handlers.delete_merged_branch,
        name="delete_merged_branch",
        middleware=gated,
    )
    router.on(
        ("pull_request.closed",),
        handlers.create_merge_tag,
        name="create_merge_tag",
        middleware=gated,
    )
    router.on(
        ("issues.closed", "pull_request.closed"),
        handlers.cancel_on_close,
        name="cancel_on_close",
        middleware=logged,
    )
    router.on(
        ("issue_comment.deleted",),
        handlers.release_deleted_notice,
        name="release_deleted_notice",
        middleware=logged,
    )
    router.on(
        ("installation.created", "installation_repositories.added"),
        handlers.backfill_installation,
        name="backfill_installation",
        middleware=logged,
    )
    return router


def _bind(middleware: Middleware, call_next: Handler) -> Handler:
    def invoke(event: WebhookEvent) -> None:
        middleware(event, call_next)

    return invoke
