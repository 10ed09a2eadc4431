from typing import Iterable, List, Optional, Set

from core.credentials import CredentialExchange, JoinCredential, credential_from_config, extract_join_credential
from core.errors import HakubeError
from core.models import (
    Node,
    NodeRole,
    Phase,
    PhaseContext,
    PHASE_ORDER,
    RunReport,
    RunResult,
    RunStatus,
    TaskStatus,
)
from core.report import print_phase_results
from core.settings import ClusterConfig
from inventory import Inventory
from utils.logger import logger, sys_logger


class PhaseController:
    """
    Runs the selected phases in order with a global barrier between them.

    Failure policy:
      - a failed control-plane node halts every later phase (recorded as skipped);
      - a failed worker is left out of later phases, the rest carry on;
      - cancellation stops new nodes/resources from starting.
    """

    def __init__(
            self,
            inventory: Inventory,
            config: ClusterConfig,
            executor,
            phases: Optional[Iterable[Phase]] = None,
            limit: Optional[str] = None,
    ):
        self.inventory = inventory
        self.config = config
        self.executor = executor
        self.phases = set(phases) if phases is not None else set(PHASE_ORDER)
        self.limit = limit
        self.exchange = CredentialExchange()

    @property
    def simulate(self) -> bool:
        return self.executor.simulate

    @property
    def cancelled(self) -> bool:
        return self.executor.cancel_event.is_set()

    def cancel(self) -> None:
        """Safe to call from a signal handler. Running commands finish; nothing new starts."""
        sys_logger.warning("Cancellation requested")
        self.executor.cancel_event.set()

    # --- RUN ---

    def run(self) -> RunReport:
        report = RunReport(simulate=self.simulate)
        selected = {n.name for n in self.inventory.select(self.limit)}
        excluded: Set[str] = set()
        halted_by: Optional[str] = None
        init_ran = False

        sys_logger.info(
            f"RUN simulate={self.simulate} phases={[p.value for p in PHASE_ORDER if p in self.phases]} "
            f"limit={self.limit!r}"
        )

        for phase in PHASE_ORDER:
            if phase not in self.phases:
                continue

            targets = [n for n in self.inventory.by_roles(phase.targets) if n.name in selected]

            with logger.phase(phase.value, f"({len(targets)} node(s))"):
                if not targets:
                    logger.log_step("skip", "no target nodes, nothing to do")
                    continue

                if self.cancelled:
                    self._skip(report, phase, targets, "cancelled")
                    continue

                if halted_by:
                    self._skip(report, phase, targets, f"blocked: {halted_by}")
                    continue

                blocked = [n for n in targets if n.name in excluded]
                self._skip(report, phase, blocked, "blocked: failed in an earlier phase")
                targets = [n for n in targets if n.name not in excluded]
                if not targets:
                    continue

                join = None
                if phase.is_join:
                    join = self._join_view(phase, init_ran, report)
                    if join is None:
                        halted_by = "no join credential"
                        self._skip(report, phase, targets, f"blocked: {halted_by}")
                        continue

                results = self._run_phase(phase, targets, join)

                if phase is Phase.INIT:
                    init_ran = True
                    results = self._after_init(results)

                print_phase_results(results, self.simulate)
                for res in results:
                    report.add(res)
                    if not res.failed:
                        continue
                    if res.role is not None and res.role.is_control_plane:
                        halted_by = f"{phase.value} failed on {res.node}"
                    else:
                        excluded.add(res.node)

                if halted_by:
                    logger.log_step("error", f"Control plane failure, later phases halted ({halted_by})")

            if self.cancelled:
                report.aborted = True

        if self.cancelled:
            report.aborted = True
        sys_logger.info(f"RUN finished exit_code={report.exit_code} changes={report.change_count}")
        return report

    def _run_phase(self, phase: Phase, targets: List[Node], join) -> List[RunResult]:
        """Precheck, then apply to the reachable nodes. Results keep target order."""
        ctx = PhaseContext(config=self.config, nodes=self.inventory.nodes, join=join)

        unreachable = self.executor.precheck(phase, targets)
        reachable = [n for n in targets if n.name not in unreachable]
        applied = {r.node: r for r in self.executor.apply(phase, reachable, ctx)}

        return [unreachable.get(n.name) or applied[n.name] for n in targets]

    @staticmethod
    def _skip(report: RunReport, phase: Phase, nodes: List[Node], reason: str) -> None:
        results = [RunResult(n.name, phase, RunStatus.SKIPPED, reason, role=n.role) for n in nodes]
        if results:
            print_phase_results(results, report.simulate)
        for res in results:
            report.add(res)

    # --- CREDENTIALS ---

    def _after_init(self, results: List[RunResult]) -> List[RunResult]:
        """
        Mints the join credential on the primary once init succeeded there.
        A skipped or cancelled init leaves nothing to extract from.
        """
        primary = self.inventory.primary
        out = []
        for res in results:
            if res.node == primary.name and res.status is RunStatus.SUCCESS and not self.cancelled:
                try:
                    self.exchange.publish(self._extract(primary))
                except HakubeError as e:
                    sys_logger.error(f"[{primary.name}] credential extraction failed: {e}")
                    res = RunResult(res.node, res.phase, RunStatus.FAILED,
                                    f"join credential extraction failed: {e}",
                                    role=res.role, changes=res.changes)
            out.append(res)
        return out

    def _extract(self, primary: Node) -> JoinCredential:
        if self.simulate:
            return JoinCredential.placeholder(self.config.api_endpoint)

        payload = self.executor.run_task(primary, extract_join_credential, "Extract Join Credential")
        if payload.status is TaskStatus.FAILED or not isinstance(payload.data, JoinCredential):
            raise HakubeError(payload.message)
        return payload.data

    def _join_view(self, phase: Phase, init_ran: bool, report: RunReport):
        """
        Credential view for a join phase. When init did not run in this
        invocation, operator-supplied material wins over a fresh fetch from
        the primary. Returns None (and records why) when nothing is usable.
        """
        try:
            if not self.exchange.available and not init_ran:
                credential = credential_from_config(self.config)
                if credential is None:
                    primary = self.inventory.primary
                    outside = primary.name not in {n.name for n in self.inventory.select(self.limit)}
                    if outside and not self.simulate:
                        logger.log_step(
                            "info",
                            f"Fetching the join credential from {primary.name} (outside --limit)",
                        )
                    credential = self._extract(primary)
                    sys_logger.info("Join credential fetched from the running primary")
                else:
                    sys_logger.info("Join credential taken from configuration")
                self.exchange.publish(credential)

            if phase is Phase.JOIN_MASTERS:
                return self.exchange.control_plane()
            return self.exchange.workers()

        except HakubeError as e:
            primary = self.inventory.primary
            sys_logger.error(f"No usable join credential for {phase.value}: {e}")
            res = RunResult(primary.name, Phase.INIT, RunStatus.FAILED,
                            f"join credential unavailable: {e}", role=NodeRole.PRIMARY)
            print_phase_results([res], self.simulate)
            report.add(res)
            return None
