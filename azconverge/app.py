"""Application bootstrap for azconverge.

Wires all components in dependency order for one command run.
Startup order: config → logging → metrics → providers → event bus
              → credential resolver → workload binding → stack → plan

Shutdown runs in reverse startup order.  Each component's close error is
caught and logged independently so one failure does not prevent the rest
from releasing their connections.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from azconverge.config import load_config
from azconverge.credentials.resolver import CredentialResolver
from azconverge.deferred import cancel_pending
from azconverge.engine.convergence import ConvergenceEngine
from azconverge.engine.events import EventBus
from azconverge.errors import ConfigurationError
from azconverge.graph.models import ConvergencePlan
from azconverge.graph.resolver import DependencyResolver
from azconverge.models.config import StackConfig
from azconverge.models.report import ApplyReport
from azconverge.observability.logging import get_logger, setup_logging
from azconverge.observability.metrics import start_metrics_server
from azconverge.providers.azure import ArmProvider
from azconverge.providers.base import CredentialSource, ProviderRegistry, ResourceProvider
from azconverge.stack.builder import Stack, build_stack
from azconverge.stack.outputs import REDACTED
from azconverge.workloads.binding import WORKLOAD_SET_TYPE, TargetFactory, WorkloadBinding

if TYPE_CHECKING:
    import structlog

_CLOSE_GRACE_SECONDS = 15


@dataclass
class RunResult:
    """What a command produced: the plan, the report and resolved outputs."""

    plan: ConvergencePlan
    report: ApplyReport | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    secrets: set[str] = field(default_factory=set)

    def rendered_outputs(self, show_secrets: bool = False) -> dict[str, Any]:
        if show_secrets:
            return dict(self.outputs)
        return {k: REDACTED if k in self.secrets and v is not None else v for k, v in self.outputs.items()}

    @property
    def exit_code(self) -> int:
        return self.report.exit_code if self.report is not None else 0


class AzConvergeApp:
    """Application root.  Owns every component for the lifetime of one command.

    ``azure`` and ``target_factory`` are injection points for an alternative
    Azure provider (any ResourceProvider that is also a CredentialSource)
    and for the workload target binding.
    """

    def __init__(
        self,
        config: StackConfig | None = None,
        azure: Any | None = None,
        target_factory: TargetFactory | None = None,
    ) -> None:
        self.config = config
        self._azure: Any | None = azure
        self._target_factory = target_factory
        self._owns_azure = azure is None
        self._events = EventBus()
        self._cancel = asyncio.Event()
        self._credentials: CredentialResolver | None = None
        self._providers = ProviderRegistry()
        self._started = False
        self._log: structlog.stdlib.BoundLogger | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            try:
                self.config = load_config()
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        config = self.config

        # --- 2. Logging -------------------------------------------------
        setup_logging(config.log.level, config.log.format)
        self._log = get_logger("app")
        self._log.info(
            "azconverge starting",
            version=_azconverge_version(),
            stack=config.stack,
            platform=config.platform.value,
        )

        # --- 3. Metrics exporter (optional) ------------------------------
        start_metrics_server(config.metrics_port)

        # --- 4. Providers -------------------------------------------------
        if self._azure is None:
            self._azure = ArmProvider(config.azure)
        if not isinstance(self._azure, ResourceProvider) or not isinstance(self._azure, CredentialSource):
            raise ConfigurationError("Azure provider must implement ResourceProvider and CredentialSource")
        self._providers.register_prefix("azure:", self._azure)

        # --- 5. Credential resolver --------------------------------------
        self._credentials = CredentialResolver(self._azure, config.cluster.credential_scope, config.engine)
        self._credentials.attach(self._events)

        # --- 6. Workload binding -----------------------------------------
        binding = WorkloadBinding(
            target_factory=self._target_factory,
            engine_config=config.engine,
            cancel_event=self._cancel,
        )
        self._providers.register(WORKLOAD_SET_TYPE, binding)

        self._started = True

    def cancel(self) -> None:
        """Request cancellation; in-flight operations fail, pending ones block."""
        if not self._cancel.is_set():
            if self._log is not None:
                self._log.warning("cancellation requested")
            self._cancel.set()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def build(self) -> tuple[Stack, ConvergencePlan]:
        """Declare the stack and plan it.  No provider calls are made."""
        if not self._started or self.config is None or self._credentials is None:
            raise RuntimeError("AzConvergeApp.start() must be called first")
        subscription = None
        if not self.config.azure.subscription_id and isinstance(self._azure, ArmProvider):
            subscription = self._azure.subscription_id
        stack = build_stack(self.config, self._credentials, subscription)
        plan = DependencyResolver(stack.store).plan()
        return stack, plan

    async def preview(self) -> RunResult:
        _, plan = self.build()
        return RunResult(plan=plan)

    async def up(self) -> RunResult:
        assert self.config is not None
        stack, plan = self.build()
        engine = self._engine(stack)
        report = await engine.apply(plan)
        outputs = await stack.outputs.resolve(report, timeout=self.config.engine.leaf_timeout)
        return RunResult(plan=plan, report=report, outputs=outputs, secrets=set(stack.outputs.secrets))

    async def destroy(self) -> RunResult:
        stack, plan = self.build()
        report = await self._engine(stack).destroy(plan)
        return RunResult(plan=plan, report=report)

    def _engine(self, stack: Stack) -> ConvergenceEngine:
        assert self.config is not None
        return ConvergenceEngine(
            stack.store,
            self._providers,
            config=self.config.engine,
            events=self._events,
            cancel_event=self._cancel,
            name=self.config.stack,
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Release components in reverse startup order."""
        log = self._log or get_logger("app")
        abandoned = await cancel_pending()
        if abandoned:
            log.warning("cancelled pending resolvers", count=abandoned)
        if self._credentials is not None:
            await self._close_component("credentials", self._credentials)
        if self._owns_azure and self._azure is not None:
            await self._close_component("azure", self._azure)
        self._started = False
        log.info("azconverge stopped")

    async def _close_component(self, name: str, component: object) -> None:
        log = self._log or get_logger("app")
        close_fn = getattr(component, "close", None)
        if close_fn is None:
            return
        try:
            await asyncio.wait_for(close_fn(), timeout=_CLOSE_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component close timed out", component=name, timeout=_CLOSE_GRACE_SECONDS)
        except Exception as exc:  # noqa: BLE001
            log.error("component close raised an error", component=name, error=str(exc))


def _azconverge_version() -> str:
    from azconverge import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def run(command: str, app: AzConvergeApp) -> RunResult:
    """Start ``app``, run one command with SIGINT/SIGTERM wired to cancel, stop."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    try:
        await app.start()
        if command != "preview":
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, app.cancel)
                installed.append(sig)
        if command == "up":
            return await app.up()
        if command == "destroy":
            return await app.destroy()
        if command == "preview":
            return await app.preview()
        raise ValueError(f"Unknown command: {command}")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await app.stop()
