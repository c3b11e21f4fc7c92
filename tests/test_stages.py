import threading
import time

import pytest
from loguru import logger

from jira_deployer.concurrency.stages import StagePlan, StagePool, await_all
from jira_deployer.errors import ConfigurationError, ProvisioningError, TransientRemoteError


def test_plan_rejects_duplicates_and_undeclared_inputs():
    plan = StagePlan()
    plan.declare("stack")

    with pytest.raises(ValueError, match="already declared"):
        plan.declare("stack")
    with pytest.raises(ValueError, match="undeclared"):
        plan.declare("roles", ["network"])


def test_plan_lists_suspension_points_in_declaration_order():
    plan = StagePlan()
    plan.declare("stack")
    plan.declare("artifacts")
    plan.declare("roles", ["stack"])
    plan.declare("node", ["roles", "artifacts"])

    assert len(plan) == 4
    assert "node" in plan
    assert plan.suspension_points() == [("roles", "stack"), ("node", "roles"), ("node", "artifacts")]


def test_pool_refuses_stage_before_its_inputs():
    plan = StagePlan()
    plan.declare("stack")
    plan.declare("roles", ["stack"])

    with StagePool("test", plan=plan) as pool:
        with pytest.raises(ValueError, match="before its inputs"):
            pool.submit("roles", lambda context: None)
        with pytest.raises(ValueError, match="not part of the plan"):
            pool.submit("database", lambda context: None)
        pool.submit("stack", lambda context: "s").get(timeout=5)
        with pytest.raises(ValueError, match="already submitted"):
            pool.submit("stack", lambda context: "s")


def test_stage_receives_inputs_and_arguments():
    plan = StagePlan()
    plan.declare("stack")
    plan.declare("roles", ["stack"])

    with StagePool("test", plan=plan, correlation_id="corr-1") as pool:
        pool.submit("stack", lambda context: 41)
        roles = pool.submit("roles", lambda context, extra: context.inputs["stack"] + extra, 1)

        assert roles.get(timeout=5) == 42
        assert pool.future("roles") is roles


def test_single_worker_pool_drains_a_chain():
    plan = StagePlan()
    plan.declare("a")
    plan.declare("b", ["a"])
    plan.declare("c", ["b"])

    with StagePool("test", max_workers=1, plan=plan) as pool:
        pool.submit("a", lambda context: "a")
        pool.submit("b", lambda context: context.inputs["a"] + "b")
        c = pool.submit("c", lambda context: context.inputs["b"] + "c")

        assert c.get(timeout=5) == "abc"


def test_stage_failure_is_attributed_and_propagates_to_dependents():
    plan = StagePlan()
    plan.declare("stack")
    plan.declare("roles", ["stack"])

    def explode(context):
        raise RuntimeError("boom")

    with StagePool("test", plan=plan) as pool:
        stack = pool.submit("stack", explode)
        roles = pool.submit("roles", lambda context: "never")

        with pytest.raises(ProvisioningError) as exc_info:
            stack.get(timeout=5)
        with pytest.raises(ProvisioningError):
            roles.get(timeout=5)

    error = exc_info.value
    assert error.stage == "stack"
    assert "RuntimeError: boom" in str(error)
    assert isinstance(error.__cause__, RuntimeError)
    assert stack.failed_at is not None
    assert roles.failed_at is None


def test_transient_errors_become_provisioning_errors():
    def flaky(context):
        raise TransientRemoteError("ssh dropped")

    with StagePool("test") as pool:
        future = pool.submit("install", flaky)
        with pytest.raises(ProvisioningError, match="ssh dropped") as exc_info:
            future.get(timeout=5)

    assert exc_info.value.stage == "install"
    assert exc_info.value.elapsed is not None


def test_configuration_errors_pass_through_unchanged():
    error = ConfigurationError("3 machines for 2 configs")

    def misconfigured(context):
        raise error

    with StagePool("test") as pool:
        future = pool.submit("roles", misconfigured)
        with pytest.raises(ConfigurationError) as exc_info:
            future.get(timeout=5)

    assert exc_info.value is error


def test_await_all_raises_earliest_failure():
    first_failed = threading.Event()

    def early(context):
        first_failed.set()
        raise ProvisioningError("first")

    def late(context):
        first_failed.wait(timeout=5)
        time.sleep(0.05)
        raise ProvisioningError("second")

    with StagePool("test", max_workers=2) as pool:
        futures = [pool.submit("late", late), pool.submit("early", early)]
        with pytest.raises(ProvisioningError, match="first"):
            await_all(futures)


def test_await_all_returns_results_in_order():
    with StagePool("test") as pool:
        futures = [pool.submit(f"s{i}", lambda context, i=i: i * i) for i in range(4)]
        assert await_all(futures) == [0, 1, 4, 9]


def test_stage_logger_is_bound_to_stage_and_correlation_id():
    extras = []
    handler = logger.add(lambda message: extras.append(dict(message.record["extra"])), level="DEBUG")
    try:
        with StagePool("test", correlation_id="corr-7") as pool:
            pool.submit("stack", lambda context: context.logger.info("hello")).get(timeout=5)
    finally:
        logger.remove(handler)

    assert any(e.get("stage") == "stack" and e.get("correlation_id") == "corr-7" for e in extras)


def test_unawaited_stage_failure_is_logged():
    errors = []
    logged = threading.Event()

    def sink(message):
        record = message.record
        if record["level"].name == "ERROR":
            errors.append((record["extra"].get("stage"), record["message"]))
            logged.set()

    def fail(context):
        raise RuntimeError("disk full")

    handler = logger.add(sink, level="ERROR")
    try:
        with StagePool("test", correlation_id="corr-8") as pool:
            pool.submit("collect metrics", fail)
            assert logged.wait(timeout=5)
    finally:
        logger.remove(handler)

    stage, message = errors[0]
    assert stage == "collect metrics"
    assert "RuntimeError: disk full" in message


def test_default_pool_runs_every_planned_stage_at_once():
    plan = StagePlan()
    for name in ("node-1", "node-2", "node-3", "node-4", "node-5"):
        plan.declare(name)
    barrier = threading.Barrier(len(plan), timeout=5)

    with StagePool("test", plan=plan) as pool:
        futures = [pool.submit(stage.name, lambda context: barrier.wait()) for stage in plan]
        await_all(futures)
