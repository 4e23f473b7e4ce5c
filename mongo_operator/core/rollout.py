"""Rollout Controller.

Turns a topology diff into single-member actions and applies at most one of
them per replica set per pass. Progress lives in ``RolloutState`` on the
cluster status, so every pass resumes from persisted state plus fresh
observation; no step ever blocks waiting for the cluster.

Per replica set::

    stable -> planning -> mutating(member) -> verifying(member) -> stable
                                   \\-------------> error (no progress, quorum risk)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from mongo_operator.core.scheduler import PassGuard
from mongo_operator.core.topology import (
    DesiredMember,
    ReplicaSetDiff,
    ReplicaSetRole,
    TopologyDiff,
    TopologyIndex,
)
from mongo_operator.errors import OperatorError, QuorumRiskError, TransientInfraError
from mongo_operator.models.cluster import (
    ClusterStatus,
    RolloutPhase,
    RolloutState,
    UpdateStrategy,
)
from mongo_operator.models.observed import ROUTERS, MemberProcess, ObservedState
from mongo_operator.utils.health import HealthReport, MemberCondition
from mongo_operator.utils.mongo_admin import AdminPool

logger = logging.getLogger(__name__)


class Platform(Protocol):
    """Member workload mutations needed by the rollout."""

    def member_host(self, replset: str, name: str) -> str: ...

    async def create_member(self, member: DesiredMember) -> None: ...

    async def update_member(self, member: DesiredMember) -> None: ...

    async def restart_member(self, member: DesiredMember) -> None: ...

    async def delete_member(self, member: MemberProcess) -> None: ...


class ActionKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    UPDATE = "update"
    RESTART = "restart"
    DRAIN = "drain"


@dataclass
class RolloutAction:
    """One single-member step of a rollout plan."""

    kind: ActionKind
    replset: str
    member: str
    index: int = 0
    desired: Optional[DesiredMember] = None

    def __str__(self) -> str:
        return f"{self.kind.value} {self.member}"


@dataclass
class ReplicaSetContext:
    """Everything the controller knows about one replica set in this pass."""

    replset: str
    diff: ReplicaSetDiff
    report: HealthReport
    state: RolloutState
    members: list[MemberProcess] = field(default_factory=list)
    desired: list[DesiredMember] = field(default_factory=list)
    role: Optional[ReplicaSetRole] = None
    initialized: bool = False
    registered: bool = False
    paused: bool = False
    blocked: Optional[str] = None
    shards: Optional[set[str]] = None
    router_host: Optional[str] = None

    @property
    def is_routers(self) -> bool:
        return self.replset == ROUTERS

    def member(self, name: Optional[str]) -> Optional[MemberProcess]:
        return next((m for m in self.members if m.name == name), None)

    def desired_member(self, name: Optional[str]) -> Optional[DesiredMember]:
        return next((d for d in self.desired if d.name == name), None)

    def primary(self) -> Optional[MemberProcess]:
        return self.member(self.report.primary) if self.report.primary else None

    @property
    def needs_drain(self) -> bool:
        if not self.diff.decommission or self.is_routers:
            return False
        if self.shards is not None:
            return self.replset in self.shards
        return self.registered


@dataclass
class RolloutOutcome:
    """Result of advancing one replica set by one pass."""

    replset: str
    state: RolloutState
    plan: list[RolloutAction] = field(default_factory=list)
    mutated: bool = False
    action: Optional[RolloutAction] = None
    deferred: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    error: Optional[OperatorError] = None
    transient_error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.state.phase == RolloutPhase.STABLE and not self.mutated

    @property
    def active(self) -> bool:
        return self.mutated or self.state.phase in (
            RolloutPhase.PLANNING,
            RolloutPhase.MUTATING,
            RolloutPhase.VERIFYING,
        )


@dataclass
class RolloutResult:
    """Outcomes of every replica set plus cluster-level shard registration."""

    outcomes: dict[str, RolloutOutcome] = field(default_factory=dict)
    registered: Optional[str] = None
    transient_errors: list[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.registered is not None or any(o.active for o in self.outcomes.values())

    @property
    def mutations(self) -> list[RolloutAction]:
        return [o.action for o in self.outcomes.values() if o.mutated and o.action]


class RolloutController:
    """
    Health-gated, one-member-at-a-time rollout.

    Removals run before additions, additions in ascending index, updates and
    restarts on secondaries (descending index) before the primary.
    """

    def __init__(
        self,
        platform: Platform,
        admin: AdminPool,
        guard: PassGuard,
        strategy: UpdateStrategy = UpdateStrategy.SMART,
        generation: int = 0,
        verify_max_passes: int = 20,
    ):
        """
        Initialize rollout controller.

        Args:
            platform: Member workload mutations
            admin: Database admin connections
            guard: Cancellation guard of the cluster
            strategy: Update strategy of the cluster
            generation: Spec generation of this pass
            verify_max_passes: Passes without progress before a set errors
        """
        self.platform = platform
        self.admin = admin
        self.guard = guard
        self.strategy = strategy
        self.generation = generation
        self.verify_max_passes = verify_max_passes

    # Planning

    def plan(self, ctx: ReplicaSetContext) -> tuple[list[RolloutAction], list[str]]:
        """
        Build the ordered plan for one replica set.

        Returns:
            The plan and the members whose update/restart is left pending
            because the strategy is manual
        """
        diff = ctx.diff
        actions: list[RolloutAction] = []

        if ctx.needs_drain:
            actions.append(RolloutAction(ActionKind.DRAIN, ctx.replset, ctx.replset))

        for member in diff.remove:
            actions.append(RolloutAction(ActionKind.DELETE, ctx.replset, member.name, member.index))

        additions = [
            RolloutAction(ActionKind.CREATE, ctx.replset, d.name, d.index, d) for d in diff.add
        ]
        if not diff.decommission and not ctx.is_routers and ctx.report.reachable:
            busy = {d.name for d in diff.add} | {m.name for m in diff.remove}
            for member in ctx.members:
                if member.name in busy or member.terminating or not member.ready:
                    continue
                desired = ctx.desired_member(member.name)
                if desired is not None and not ctx.report.in_config(member.name):
                    # Running but never joined: finish the create.
                    additions.append(
                        RolloutAction(
                            ActionKind.CREATE, ctx.replset, member.name, member.index, desired
                        )
                    )
        actions.extend(sorted(additions, key=lambda a: a.index))

        updates = [
            RolloutAction(ActionKind.UPDATE, ctx.replset, d.name, d.index, d) for d in diff.update
        ]
        rolls = [
            RolloutAction(ActionKind.RESTART, ctx.replset, d.name, d.index, d) for d in diff.restart
        ]
        pending: list[str] = []
        if self.strategy == UpdateStrategy.MANUAL:
            # Restarts requested by credential rotation still roll.
            pending = [str(a) for a in updates]
        else:
            rolls += updates

        primary = ctx.report.primary
        rolls.sort(key=lambda a: (a.member == primary, -a.index))
        actions.extend(rolls)
        return actions, pending

    def _select(
        self, ctx: ReplicaSetContext, plan: list[RolloutAction]
    ) -> tuple[RolloutAction, list[str]]:
        """First action whose target is not unreachable; unreachable targets go last."""
        deferred: list[str] = []
        if ctx.diff.decommission or ctx.is_routers:
            return plan[0], deferred
        for action in plan:
            if action.kind in (ActionKind.CREATE, ActionKind.DRAIN):
                return action, deferred
            member = ctx.member(action.member)
            if (
                member is not None
                and not member.terminating
                and ctx.report.condition(action.member) == MemberCondition.UNREACHABLE
            ):
                deferred.append(action.member)
                continue
            return action, deferred
        return plan[0], deferred

    # State transitions

    def _begin(self, state: RolloutState, action: RolloutAction) -> None:
        state.phase = RolloutPhase.MUTATING
        state.action = action.kind.value
        state.member = action.member
        state.step = 0
        state.verify_passes = 0
        state.reason = None
        state.message = f"{action} started"

    def _complete(self, state: RolloutState) -> None:
        logger.info(f"Rollout action {state.action} {state.member} verified")
        state.phase = RolloutPhase.STABLE
        state.action = None
        state.member = None
        state.step = 0
        state.verify_passes = 0
        state.reason = None
        state.message = None

    def _fail(self, state: RolloutState, reason: str, message: str) -> None:
        logger.error(f"Rollout error: {message}")
        state.phase = RolloutPhase.ERROR
        state.reason = reason
        state.message = message
        state.error_generation = self.generation

    def _no_progress(self, state: RolloutState, message: str) -> None:
        state.verify_passes += 1
        state.message = message
        if state.verify_passes > self.verify_max_passes:
            self._fail(
                state,
                "VerificationTimeout",
                f"{state.action} {state.member}: no progress after "
                f"{self.verify_max_passes} passes ({message})",
            )

    def _progress(self, outcome: RolloutOutcome, message: str) -> None:
        outcome.mutated = True
        outcome.state.verify_passes = 0
        outcome.state.message = message

    def _host(self, ctx: ReplicaSetContext, name: str) -> str:
        member = ctx.member(name)
        if member is not None and member.host:
            return member.host
        return self.platform.member_host(ctx.replset, name)

    # Per replica set

    async def advance(self, ctx: ReplicaSetContext) -> RolloutOutcome:
        """
        Advance one replica set by at most one member mutation.

        Args:
            ctx: Replica set context of this pass

        Returns:
            The new rollout state and what happened
        """
        state = ctx.state.model_copy()
        state.paused = ctx.paused
        outcome = RolloutOutcome(replset=ctx.replset, state=state)

        if state.phase == RolloutPhase.ERROR:
            if state.error_generation is not None and self.generation > state.error_generation:
                logger.info(f"Clearing rollout error of {ctx.replset}: spec changed")
                state = RolloutState(paused=ctx.paused)
                outcome.state = state
            else:
                outcome.plan, outcome.pending = self.plan(ctx)
                return outcome

        try:
            if state.in_flight:
                await self._continue(ctx, outcome)
            if outcome.mutated or state.in_flight or state.phase == RolloutPhase.ERROR:
                return outcome
            await self._plan_and_start(ctx, outcome)
        except QuorumRiskError as e:
            self._fail(state, e.reason, e.message)
            outcome.error = e
        except TransientInfraError as e:
            logger.warning(f"Rollout of {ctx.replset} deferred: {e}")
            state.message = str(e)
            outcome.transient_error = str(e)
        return outcome

    async def _plan_and_start(self, ctx: ReplicaSetContext, outcome: RolloutOutcome) -> None:
        state = outcome.state
        plan, pending = self.plan(ctx)
        outcome.plan, outcome.pending = plan, pending

        if not plan:
            self._complete_idle(state, pending)
            return

        state.phase = RolloutPhase.PLANNING
        if ctx.paused:
            state.message = "paused while a restore is in progress"
            return
        if ctx.blocked:
            state.message = ctx.blocked
            return

        action, outcome.deferred = self._select(ctx, plan)
        outcome.action = action
        if outcome.deferred:
            logger.info(f"Deferring actions on unreachable members {outcome.deferred}")

        if action.kind == ActionKind.DELETE:
            await self._start_delete(ctx, outcome, action)
        elif action.kind in (ActionKind.UPDATE, ActionKind.RESTART):
            await self._start_roll(ctx, outcome, action)
        else:
            self._begin(state, action)
            if action.kind == ActionKind.CREATE and ctx.member(action.member) is None:
                self.guard.ensure_active()
                await self.platform.create_member(action.desired)
                self._progress(outcome, f"created {action.member}")
                state.phase = RolloutPhase.VERIFYING
                return
            await self._continue(ctx, outcome)

    def _complete_idle(self, state: RolloutState, pending: list[str]) -> None:
        state.phase = RolloutPhase.STABLE
        state.action = None
        state.member = None
        state.step = 0
        state.verify_passes = 0
        state.reason = None
        state.message = f"pending manual update: {', '.join(pending)}" if pending else None

    async def _start_delete(
        self, ctx: ReplicaSetContext, outcome: RolloutOutcome, action: RolloutAction
    ) -> None:
        state = outcome.state
        if not ctx.diff.decommission and not ctx.is_routers:
            if not ctx.report.reachable:
                state.message = f"waiting to remove {action.member}: membership unknown"
                return
            safe = ctx.report.is_rollout_safe(action.member)
            if ctx.report.in_config(action.member) and not safe:
                raise QuorumRiskError(
                    f"removing {action.member} would leave replica set '{ctx.replset}' with "
                    f"{ctx.report.healthy_count(exclude=action.member)} healthy of "
                    f"{ctx.report.voting_size()} voting members",
                    replset=ctx.replset,
                    member=action.member,
                )
        self._begin(state, action)
        await self._continue(ctx, outcome)

    async def _start_roll(
        self, ctx: ReplicaSetContext, outcome: RolloutOutcome, action: RolloutAction
    ) -> None:
        state = outcome.state
        if self.strategy == UpdateStrategy.SMART and not ctx.is_routers:
            if not ctx.report.is_rollout_safe(action.member):
                state.message = f"waiting to {action}: replica set not rollout-safe"
                return
        elif any(m.terminating or not m.ready for m in ctx.members if m.name != action.member):
            state.message = f"waiting to {action}: workloads not ready"
            return
        self._begin(state, action)
        await self._continue(ctx, outcome)

    async def _continue(self, ctx: ReplicaSetContext, outcome: RolloutOutcome) -> None:
        state = outcome.state
        kind = ActionKind(state.action) if state.action else None
        if kind == ActionKind.CREATE:
            await self._continue_create(ctx, outcome)
        elif kind == ActionKind.DELETE:
            await self._continue_delete(ctx, outcome)
        elif kind in (ActionKind.UPDATE, ActionKind.RESTART):
            await self._continue_roll(ctx, outcome, kind)
        elif kind == ActionKind.DRAIN:
            await self._continue_drain(ctx, outcome)
        else:
            self._complete(state)

    async def _continue_create(self, ctx: ReplicaSetContext, outcome: RolloutOutcome) -> None:
        state = outcome.state
        state.phase = RolloutPhase.VERIFYING
        name = state.member
        member = ctx.member(name)
        report = ctx.report

        if member is None or not member.ready:
            self._no_progress(state, f"waiting for {name} to become ready")
            return

        if ctx.is_routers:
            if report.is_healthy(name):
                self._complete(state)
            else:
                self._no_progress(state, f"waiting for router {name} to respond")
            return

        if report.is_healthy(name) and report.in_config(name):
            self._complete(state)
            return

        if not report.initialized:
            if report.reachable and not ctx.initialized:
                self.guard.ensure_active()
                await self.admin.get(member.host).initiate(
                    ctx.replset, [member.host], configsvr=ctx.role == ReplicaSetRole.CONFIG
                )
                self._progress(outcome, f"initiated replica set with {name}")
            else:
                self._no_progress(state, "waiting for replica set status")
            return

        if not report.in_config(name):
            primary = ctx.primary()
            if primary is None:
                self._no_progress(state, f"waiting for a primary to add {name}")
                return
            self.guard.ensure_active()
            await self.admin.get(primary.host).add_member(member.host)
            self._progress(outcome, f"added {name} to replica set config")
            return

        self._no_progress(state, f"waiting for {name} to sync")

    async def _continue_delete(self, ctx: ReplicaSetContext, outcome: RolloutOutcome) -> None:
        state = outcome.state
        name = state.member
        member = ctx.member(name)
        report = ctx.report

        if state.phase == RolloutPhase.MUTATING:
            if not ctx.diff.decommission and not ctx.is_routers:
                if not report.reachable:
                    self._no_progress(state, f"waiting to remove {name}: membership unknown")
                    return
                if report.in_config(name):
                    # Database membership is dropped before the workload.
                    if report.primary == name:
                        self.guard.ensure_active()
                        await self.admin.get(self._host(ctx, name)).step_down()
                        state.step = 1
                        self._progress(outcome, f"stepping down {name}")
                        return
                    primary = ctx.primary()
                    if primary is None:
                        self._no_progress(state, f"waiting for a primary to remove {name}")
                        return
                    self.guard.ensure_active()
                    await self.admin.get(primary.host).remove_member(self._host(ctx, name))
                    state.step = 2
                    self._progress(outcome, f"removed {name} from replica set config")
                    return

            if member is not None and not member.terminating:
                self.guard.ensure_active()
                await self.platform.delete_member(member)
                outcome.mutated = True
            state.step = 3
            state.phase = RolloutPhase.VERIFYING
            state.verify_passes = 0
            state.message = f"deleted {name}"
            return

        if member is None:
            self._complete(state)
        else:
            self._no_progress(state, f"waiting for {name} to terminate")

    async def _continue_roll(
        self, ctx: ReplicaSetContext, outcome: RolloutOutcome, kind: ActionKind
    ) -> None:
        state = outcome.state
        name = state.member
        member = ctx.member(name)
        desired = ctx.desired_member(name)

        if member is None or desired is None:
            # The member went away under us; replan next pass.
            self._complete(state)
            return

        smart = self.strategy == UpdateStrategy.SMART and not ctx.is_routers

        if state.phase == RolloutPhase.MUTATING:
            if smart and ctx.report.primary == name:
                self.guard.ensure_active()
                await self.admin.get(member.host).step_down()
                state.step = 1
                self._progress(outcome, f"stepping down {name} before {kind.value}")
                return
            self.guard.ensure_active()
            if kind == ActionKind.UPDATE:
                await self.platform.update_member(desired)
            else:
                await self.platform.restart_member(desired)
            state.step = 2
            state.phase = RolloutPhase.VERIFYING
            self._progress(outcome, f"{kind.value} applied to {name}")
            return

        applied = (
            member.image == desired.image
            and member.config_hash == desired.config_hash
            and member.restart_token == desired.restart_token
        )
        if not applied or not member.ready:
            self._no_progress(state, f"waiting for {name} to come back")
            return
        if (smart or ctx.is_routers) and not ctx.report.is_healthy(name):
            self._no_progress(state, f"waiting for {name} to become healthy")
            return
        self._complete(state)

    async def _continue_drain(self, ctx: ReplicaSetContext, outcome: RolloutOutcome) -> None:
        state = outcome.state
        if ctx.router_host is None:
            state.message = f"waiting for a router to drain shard {ctx.replset}"
            return
        self.guard.ensure_active()
        progress = await self.admin.get(ctx.router_host).remove_shard(ctx.replset)
        outcome.mutated = True
        if progress == "completed":
            logger.info(f"Shard {ctx.replset} drained")
            self._complete(state)
            return
        state.message = f"draining shard {ctx.replset} ({progress})"

    # Whole cluster

    def _context(
        self,
        name: str,
        desired: dict[str, list[DesiredMember]],
        diff: TopologyDiff,
        reports: dict[str, HealthReport],
        observed: ObservedState,
        index: TopologyIndex,
        previous: ClusterStatus,
        isolated: set[str],
    ) -> ReplicaSetContext:
        router_report = reports.get(ROUTERS)
        shards = router_report.shards if router_report else None
        router_host = None
        if router_report is not None:
            router_host = next(
                (r.host for r in observed.routers if router_report.is_healthy(r.name)), None
            )

        if name == ROUTERS:
            state = previous.routers.rollout.model_copy() if previous.routers else RolloutState()
            members = list(observed.routers)
        else:
            state = previous.rollout_state(name)
            members = observed.replset_members(name)

        rs_status = previous.replsets.get(name)
        return ReplicaSetContext(
            replset=name,
            diff=diff.for_replset(name),
            report=reports.get(name) or HealthReport(replset=name),
            state=state,
            members=members,
            desired=desired.get(name, []),
            role=index.role(name),
            initialized=bool(rs_status and rs_status.initialized),
            registered=bool(rs_status and rs_status.registered),
            paused=name in isolated,
            shards=shards,
            router_host=router_host,
        )

    async def reconcile(
        self,
        desired: dict[str, list[DesiredMember]],
        diff: TopologyDiff,
        reports: dict[str, HealthReport],
        observed: ObservedState,
        index: TopologyIndex,
        previous: ClusterStatus,
        isolated: Optional[set[str]] = None,
    ) -> RolloutResult:
        """
        Advance every replica set, the router tier and shard registration.

        Args:
            desired: Desired members per replica set
            diff: Topology diff of this pass
            reports: Health reports per replica set (and routers)
            observed: Observed state
            index: Topology lookup table
            previous: Status persisted by the previous pass
            isolated: Replica sets paused by a restore

        Returns:
            Per replica set outcomes
        """
        isolated = isolated or set()
        result = RolloutResult()

        names = [n for n in desired if n != ROUTERS]
        names += [n for n in diff.replsets if n not in desired and n != ROUTERS]

        cfg_settled = True
        for name in names:
            ctx = self._context(name, desired, diff, reports, observed, index, previous, isolated)
            if index.sharded and name != index.config_server and not cfg_settled:
                ctx.blocked = f"waiting for config server replica set '{index.config_server}'"
            outcome = await self.advance(ctx)
            result.outcomes[name] = outcome
            if name == index.config_server:
                cfg_settled = outcome.settled
            if outcome.transient_error:
                result.transient_errors.append(f"{name}: {outcome.transient_error}")

        if ROUTERS in desired or ROUTERS in diff.replsets:
            ctx = self._context(
                ROUTERS, desired, diff, reports, observed, index, previous, isolated
            )
            sets_settled = all(o.settled for o in result.outcomes.values())
            if not sets_settled and not ctx.diff.decommission:
                ctx.blocked = "waiting for replica sets to settle before routers"
            outcome = await self.advance(ctx)
            result.outcomes[ROUTERS] = outcome
            if outcome.transient_error:
                result.transient_errors.append(f"{ROUTERS}: {outcome.transient_error}")
            if index.sharded and outcome.settled:
                await self._register_shards(ctx, result, reports, observed, index)

        return result

    async def _register_shards(
        self,
        routers: ReplicaSetContext,
        result: RolloutResult,
        reports: dict[str, HealthReport],
        observed: ObservedState,
        index: TopologyIndex,
    ) -> None:
        """Add one settled, unregistered shard per pass through a healthy router."""
        if routers.shards is None or routers.router_host is None:
            return
        for shard in index.shards:
            if shard in routers.shards:
                continue
            outcome = result.outcomes.get(shard)
            report = reports.get(shard)
            if outcome is None or not outcome.settled or report is None or not report.primary:
                continue
            hosts = [
                m.host
                for m in observed.replset_members(shard)
                if report.is_healthy(m.name) and report.in_config(m.name)
            ]
            try:
                self.guard.ensure_active()
                await self.admin.get(routers.router_host).add_shard(shard, hosts)
            except TransientInfraError as e:
                logger.warning(f"Registering shard {shard} failed: {e}")
                result.transient_errors.append(f"{shard}: {e}")
                return
            result.registered = shard
            return
