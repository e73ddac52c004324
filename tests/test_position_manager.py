import asyncio

import pytest

from hedgearb.errors import PartialFillError, ValidationError, VenueError
from hedgearb.models import Leg, PnLBreakdown, Position, PositionStatus
from hedgearb.position_manager import PositionLedger
from hedgearb.state import TradingState

from conftest import FakeClock, FakeVenue, MemoryStore, make_config

OPENED = 1_700_000_000.0


def make_position(trade_id='ADA_1', simulated=False, spot_price=100.0, futures_price=101.0, amount=1.0,
                  funding=0.0001, size=100.0) -> Position:
    return Position(
        trade_id=trade_id, instrument='ADA/USDT',
        spot_leg=Leg('mexc', spot_price, amount, 'm-1', filled=True),
        futures_leg=Leg('bitget', futures_price, amount, 'b-1', filled=True),
        position_size_usd=size, spread_at_open=0.84, funding_rate_at_open=funding,
        open_time=OPENED, simulated=simulated,
    )


def make_ledger(venues=None, open_positions=None, store=None, clock=None, notifier=None, **config):
    cfg = make_config(execution={'order_timeout_seconds': 0.05}, **config)
    clock = clock or FakeClock(OPENED)
    venues = venues if venues is not None else {
        'mexc': FakeVenue('mexc', spot={'ADA/USDT': 100.5}),
        'bitget': FakeVenue('bitget', futures={'ADA/USDT': 100.8}),
    }
    state = TradingState(cfg, clock=clock)
    ledger = PositionLedger(cfg, venues, store or MemoryStore(), state=state, notifier=notifier, clock=clock)
    for p in open_positions or []:
        ledger.positions[p.trade_id] = p
    return ledger


def pnl_at(pct, hours=0.0, funding_cost=0.0):
    return PnLBreakdown(0.0, 0.0, 0.0, 0.0, hours, 0, funding_cost, pct, pct)


def test_pnl_reference_example():
    ledger = make_ledger()
    pnl = ledger.calculate_pnl(make_position(), 100.5, 100.8, now=OPENED + 9 * 3600)

    assert pnl.funding_periods == 1
    assert pnl.funding_cost == pytest.approx(0.01)
    assert pnl.closing_cost == pytest.approx(0.16)
    assert pnl.spot_pnl == pytest.approx(0.5)
    assert pnl.futures_pnl == pytest.approx(0.2)
    assert pnl.unrealized_pnl == pytest.approx(0.7)
    assert pnl.net_pnl == pytest.approx(0.53)
    assert pnl.net_pnl_pct == pytest.approx(0.53)


def test_take_profit_is_inclusive():
    ledger = make_ledger()
    position = make_position()
    assert ledger.should_close(position, pnl_at(0.4)).should_close
    assert ledger.should_close(position, pnl_at(0.4)).reason.startswith('TAKE_PROFIT')
    assert ledger.should_close(position, pnl_at(0.4 - 1e-9)).reason == 'HOLDING'


def test_stop_loss_max_time_and_funding_triggers():
    ledger = make_ledger()
    position = make_position()
    assert ledger.should_close(position, pnl_at(-0.2)).reason.startswith('STOP_LOSS')
    assert ledger.should_close(position, pnl_at(0.0, hours=24.0)).reason.startswith('MAX_TIME')
    assert ledger.should_close(position, pnl_at(0.0, funding_cost=0.2)).reason.startswith('HIGH_FUNDING')
    assert not ledger.should_close(position, pnl_at(0.0, funding_cost=0.14)).should_close


def test_auto_close_disabled_never_closes():
    ledger = make_ledger(positions={'auto_close_enabled': False})
    decision = ledger.should_close(make_position(), pnl_at(5.0))
    assert decision == type(decision)(False, 'AUTO_CLOSE_DISABLED')


def test_monitor_closes_on_take_profit(sink, notifier):
    position = make_position()
    clock = FakeClock(OPENED + 9 * 3600)
    ledger = make_ledger(open_positions=[position], clock=clock, notifier=notifier)

    async def scenario():
        closes = await ledger.monitor_once()
        await notifier.drain()
        return closes

    [result] = asyncio.run(scenario())
    assert result.success
    assert position.status is PositionStatus.CLOSED
    assert position.close_reason.startswith('TAKE_PROFIT')
    assert ledger.positions == {}
    assert ledger.closed == [position]
    assert ledger.venues['mexc'].calls[-1] == ('place_market_sell', 'ADA/USDT', 1.0)
    assert ledger.venues['bitget'].calls[-1] == ('place_futures_close', 'ADA/USDT', 1.0, 'buy')
    assert 'position_closed' in sink.types()


def test_monitor_holds_when_prices_are_unavailable():
    venues = {'mexc': FakeVenue('mexc', spot={'ADA/USDT': 100.5}, fail={'fetch_spot_price': VenueError("down")}),
              'bitget': FakeVenue('bitget', futures={'ADA/USDT': 100.8})}
    position = make_position()
    ledger = make_ledger(venues=venues, open_positions=[position], clock=FakeClock(OPENED + 30 * 3600))

    assert asyncio.run(ledger.monitor_once()) == []
    assert position.status is PositionStatus.OPEN


def test_partial_unwind_is_flagged_and_not_retried(sink, notifier):
    venues = {
        'mexc': FakeVenue('mexc', spot={'ADA/USDT': 100.5}),
        'bitget': FakeVenue('bitget', futures={'ADA/USDT': 100.8}, fail={'place_futures_close': VenueError("rejected")}),
    }
    position = make_position()
    ledger = make_ledger(venues=venues, open_positions=[position], clock=FakeClock(OPENED + 9 * 3600), notifier=notifier)

    async def scenario():
        first = await ledger.monitor_once()
        second = await ledger.monitor_once()
        await notifier.drain()
        return first, second

    [result], second = asyncio.run(scenario())
    assert not result.success
    assert result.error.code == 'PARTIAL_FILL'
    assert result.error.context['failed_leg'] == 'futures'
    assert position.status is PositionStatus.OPEN
    assert position.needs_attention
    assert position.spot_leg.closed and not position.futures_leg.closed
    assert second == []
    assert venues['mexc'].count('place_market_sell') == 1
    assert ledger.state.consecutive_failures == 1
    assert ledger.state.total_trades == 0
    assert 'position_attention' in sink.types()


def test_manual_close_sends_only_the_remaining_leg():
    position = make_position()
    position.spot_leg.closed = True
    position.spot_leg.close_price = 100.4
    position.needs_attention = True
    ledger = make_ledger(open_positions=[position])

    result = asyncio.run(ledger.close_position('ADA_1'))

    assert result.success
    assert ledger.venues['mexc'].count('place_market_sell') == 0
    assert ledger.venues['bitget'].count('place_futures_close') == 1
    assert position.close_reason == 'MANUAL'
    assert not position.needs_attention


def test_close_unknown_position():
    result = asyncio.run(make_ledger().close_position('nope'))
    assert not result.success
    assert result.error.code == 'UNKNOWN_POSITION'


def test_close_with_venue_down_keeps_position_open():
    venues = {'mexc': FakeVenue('mexc', available=False), 'bitget': FakeVenue('bitget')}
    position = make_position()
    ledger = make_ledger(venues=venues, open_positions=[position])

    result = asyncio.run(ledger.close_position('ADA_1'))
    assert result.error.code == 'VENUE_UNAVAILABLE'
    assert 'ADA_1' in ledger.positions
    assert venues['bitget'].count('place_futures_close') == 0


def test_simulated_close_uses_market_prices_without_orders():
    position = make_position(simulated=True)
    ledger = make_ledger(open_positions=[position])

    result = asyncio.run(ledger.close_position('ADA_1', 'MANUAL'))

    assert result.success
    assert position.spot_leg.close_price == 100.5
    assert position.futures_leg.close_price == 100.8
    assert ledger.venues['mexc'].count('place_market_sell') == 0


def test_late_close_fill_finishes_the_unwind():
    venues = {
        'mexc': FakeVenue('mexc', spot={'ADA/USDT': 100.5}),
        'bitget': FakeVenue('bitget', futures={'ADA/USDT': 100.8}, delays={'place_futures_close': 0.15}),
    }
    position = make_position()
    ledger = make_ledger(venues=venues, open_positions=[position])

    async def scenario():
        result = await ledger.close_position('ADA_1')
        await asyncio.sleep(0.3)
        return result

    result = asyncio.run(scenario())
    assert not result.success
    assert result.error.code == 'PARTIAL_FILL'
    assert position.status is PositionStatus.CLOSED
    assert ledger.closed == [position]


def test_persistence_round_trip():
    store = MemoryStore()
    ledger = make_ledger(store=store)

    async def scenario():
        await ledger.open_position(make_position('ADA_1'))
        failed = make_position('ADA_2')
        failed.futures_leg.filled = False
        await ledger.record_failed(failed, VenueError("x"))

        fresh = make_ledger(store=store)
        await fresh.load()
        return fresh

    fresh = asyncio.run(scenario())
    assert list(fresh.positions) == ['ADA_1']
    assert fresh.positions['ADA_1'].spot_leg.order_id == 'm-1'
    assert fresh.positions['ADA_1'].status is PositionStatus.OPEN
    assert fresh.failed['ADA_2'].status is PositionStatus.FAILED
    assert not fresh.failed['ADA_2'].futures_leg.filled


def test_duplicate_open_is_rejected():
    ledger = make_ledger()

    async def scenario():
        await ledger.open_position(make_position('ADA_1'))
        await ledger.open_position(make_position('ADA_1'))

    with pytest.raises(ValidationError) as exc:
        asyncio.run(scenario())
    assert exc.value.code == 'DUPLICATE_TRADE_ID'


def test_history_is_capped_and_flagged_failures_are_kept():
    store = MemoryStore()
    ledger = make_ledger(store=store, positions={'history_limit': 2})

    async def scenario():
        for n in (1, 2, 3):
            await ledger.open_position(make_position(f'ADA_{n}', simulated=True))
            await ledger.close_position(f'ADA_{n}', 'MANUAL')
        await ledger.record_failed(make_position('DOT_1'), PartialFillError("futures leg failed"))
        for n in (2, 3, 4):
            await ledger.record_failed(make_position(f'DOT_{n}'), VenueError("both legs failed"))

    asyncio.run(scenario())
    assert [p.trade_id for p in ledger.closed] == ['ADA_2', 'ADA_3']
    assert [d['trade_id'] for d in store.data['closed_positions']] == ['ADA_2', 'ADA_3']
    assert list(ledger.failed) == ['DOT_1', 'DOT_4']
    assert ledger.failed['DOT_1'].needs_attention


def test_mutations_only_rewrite_the_books_they_touch():
    store = MemoryStore()
    ledger = make_ledger(store=store)

    async def scenario():
        await ledger.open_position(make_position('ADA_1', simulated=True))
        opened = list(store.saves)
        store.saves.clear()
        await ledger.close_position('ADA_1', 'MANUAL')
        closed = list(store.saves)
        store.saves.clear()
        await ledger.record_failed(make_position('ADA_2'), VenueError("x"))
        return opened, closed, list(store.saves)

    opened, closed, failed = asyncio.run(scenario())
    assert opened == ['positions']
    assert closed == ['positions', 'closed_positions']
    assert failed == ['failed_trades']
