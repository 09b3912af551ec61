import pytest

from superfans.saga import Saga, SagaFailed


class Boom(Exception):
    pass


async def test_all_steps_run_in_order_and_results_are_shared():
    seen = []

    async def first(results):
        seen.append("first")
        return 1

    async def second(results):
        seen.append("second")
        return results["first"] + 1

    results = await Saga("ok").step("first", first).step(
        "second", second).run()
    assert seen == ["first", "second"]
    assert results == {"first": 1, "second": 2}


async def test_failure_runs_compensations_in_reverse_order():
    undone = []

    def action(name):
        async def run(_):
            return name
        return run

    async def undo(result):
        undone.append(result)

    async def fail(_):
        raise Boom("db down")

    saga = Saga("rollback")
    saga.step("a", action("a"), compensate=undo)
    saga.step("b", action("b"), compensate=undo)
    saga.step("c", fail, compensate=undo)

    with pytest.raises(SagaFailed) as info:
        await saga.run()

    err = info.value
    assert undone == ["b", "a"]
    assert err.step == "c"
    assert isinstance(err.error, Boom)
    assert err.results == {"a": "a", "b": "b"}
    assert not err.requires_manual_resolution


async def test_failed_compensation_requires_manual_resolution():
    calls = []

    async def create(_):
        return {"presale_id": "presale-1"}

    async def resolve(result):
        calls.append("resolve")
        raise Boom("provider unavailable")

    async def other(_):
        return "x"

    async def undo_other(_):
        calls.append("undo_other")

    async def store(_):
        raise Boom("update failed")

    saga = (Saga("activate")
            .step("create", create, compensate=resolve)
            .step("other", other, compensate=undo_other)
            .step("store", store))

    with pytest.raises(SagaFailed) as info:
        await saga.run()

    err = info.value
    # unwinding continues past the failed compensation
    assert calls == ["undo_other", "resolve"]
    assert err.requires_manual_resolution
    assert [c.step for c in err.compensation_errors] == ["create"]
    assert err.results["create"]["presale_id"] == "presale-1"


async def test_first_step_failure_has_nothing_to_compensate():
    async def fail(_):
        raise Boom("nope")

    with pytest.raises(SagaFailed) as info:
        await Saga("early").step("only", fail).run()
    assert info.value.results == {}
    assert info.value.compensation_errors == []
