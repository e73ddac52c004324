import asyncio

from hedgearb.engine import HedgeEngine, build_notifier
from hedgearb.notifier import LogSink, TelegramSink

from conftest import FakeClock, FakeVenue, MemoryStore, make_config


def make_engine(notifier, clock=None, spot_delay=0.0, **config):
    config.setdefault('scanner', {})
    config['scanner'] = {'instruments': ['ADA/USDT', 'DOT/USDT'], **config['scanner']}
    cfg = make_config(**config)
    venues = {
        'mexc': FakeVenue('mexc', spot={'ADA/USDT': 100.0, 'DOT/USDT': 6.0},
                          futures={'ADA/USDT': 100.2, 'DOT/USDT': 6.0}),
        'bitget': FakeVenue('bitget', spot={'ADA/USDT': 100.9, 'DOT/USDT': 6.0},
                            futures={'ADA/USDT': 101.0, 'DOT/USDT': 6.01}),
    }
    if spot_delay:
        for v in venues.values():
            v.delays['fetch_spot_price'] = spot_delay
    return HedgeEngine(cfg, venues=venues, store=MemoryStore(), notifier=notifier, clock=clock or FakeClock())


def test_scan_cycle_finds_and_tracks_opportunities(sink, notifier):
    clock = FakeClock()
    engine = make_engine(notifier, clock)

    async def scenario():
        first = await engine.scan_cycle()
        clock.advance(5)
        second = await engine.scan_cycle()
        await notifier.drain()
        return first, second

    first, second = asyncio.run(scenario())

    [opp] = first
    assert (opp.instrument, opp.buy_venue, opp.sell_venue) == ('ADA/USDT', 'mexc', 'bitget')
    assert abs(opp.net_spread_pct - 0.84) < 1e-9
    assert second[0].lifetime_seconds == 5.0
    assert engine.latest == second
    assert len(engine.history) == 2
    assert engine.cycles == 2
    # alert only when the spread first appears
    assert sink.types() == ['opportunity']
    assert engine.positions() == []


def test_overlapping_scan_is_skipped(notifier):
    engine = make_engine(notifier, spot_delay=0.05)

    async def scenario():
        return await asyncio.gather(engine.scan_cycle(), engine.scan_cycle())

    first, second = asyncio.run(scenario())
    assert first is not None and second is None
    assert engine.skipped_cycles == 1
    assert engine.cycles == 1


def test_auto_execute_opens_one_position_per_instrument(sink, notifier):
    engine = make_engine(notifier, system={'auto_execute': True})

    async def scenario():
        await engine.scan_cycle()
        await engine.scan_cycle()
        await notifier.drain()

    asyncio.run(scenario())
    [position] = engine.positions()
    assert position['instrument'] == 'ADA/USDT'
    assert position['simulated'] is True
    assert sink.types().count('trade_opened') == 1
    assert engine.get_stats()['successful_trades'] == 1


def test_auto_execute_waits_for_min_lifetime(notifier):
    clock = FakeClock()
    engine = make_engine(notifier, clock, system={'auto_execute': True}, scanner={'min_lifetime_seconds': 10})

    async def scenario():
        await engine.scan_cycle()
        held_early = len(engine.ledger.positions)
        clock.advance(10)
        await engine.scan_cycle()
        return held_early

    assert asyncio.run(scenario()) == 0
    assert len(engine.ledger.positions) == 1


def test_command_surface(sink, notifier):
    engine = make_engine(notifier)

    async def scenario():
        [opp] = await engine.scan_cycle()
        await engine.enable_emergency_stop()
        blocked = await engine.execute_hedged_trade(opp)
        await engine.disable_emergency_stop()
        opened = await engine.execute_hedged_trade(opp)
        closed = await engine.close_position(opened.trade_id)
        await engine.reset_failure_count()
        await notifier.drain()
        return blocked, opened, closed

    blocked, opened, closed = asyncio.run(scenario())

    assert blocked.error.code == 'EMERGENCY_STOP'
    assert opened.success
    assert closed.success and closed.position.close_reason == 'MANUAL'
    assert [e['active'] for e in sink.events if e['type'] == 'emergency_stop'] == [True, False]

    stats = engine.get_stats()
    assert stats['rejected_opportunities'] == 1
    assert stats['successful_trades'] == 1
    assert stats['active_positions'] == 0
    assert stats['closed_positions'] == 1
    assert stats['scan_cycles'] == 1
    assert stats['active_spreads'] == 1
    assert stats['config']['simulation_mode'] is True


def test_run_loop_drops_ticks_while_a_scan_is_running(notifier):
    engine = make_engine(notifier, spot_delay=0.03, scanner={'interval_seconds': 0.01})

    async def scenario():
        assert await engine.start() is True
        runner = asyncio.create_task(engine.run())
        await asyncio.sleep(0.15)
        await engine.shutdown()
        await runner

    asyncio.run(scenario())
    assert engine.cycles >= 1
    assert engine.skipped_cycles >= 1


def test_lifetime_stats_reflect_ended_spreads(notifier):
    clock = FakeClock()
    engine = make_engine(notifier, clock)

    async def scenario():
        await engine.scan_cycle()
        clock.advance(7)
        engine.venues['bitget'].futures['ADA/USDT'] = 100.0
        await engine.scan_cycle()

    asyncio.run(scenario())
    stats = engine.lifetime_stats()
    assert stats['count'] == 1
    assert stats['max_lifetime'] == 7.0


def test_build_notifier_adds_telegram_only_when_configured():
    plain = build_notifier(make_config())
    assert [type(s) for s in plain.sinks] == [LogSink]

    cfg = make_config(notifications={'telegram': {'enabled': True, 'token': 't', 'chat_id': 42}})
    assert [type(s) for s in build_notifier(cfg).sinks] == [LogSink, TelegramSink]
