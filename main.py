# main.py
import asyncio
import sys
import questionary
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

from hedgearb.config import load_config
from hedgearb.engine import HedgeEngine
from hedgearb.logger import setup_console_logger, AsyncAuditLogger

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to select instruments and venues."""
    print("\n🚀 HEDGED ARBITRAGE CONTROL \n")
    instruments = questionary.checkbox("Select Instruments to Scan:", choices=config['scanner']['instruments']).ask()
    if not instruments:
        print("No instruments selected. Exiting.")
        sys.exit()

    avail_exchanges = list(config['exchanges'].keys())
    exchanges = questionary.checkbox("Select Exchanges to Activate:", choices=avail_exchanges).ask()
    if not exchanges or len(exchanges) < 2:
        print("Need at least 2 exchanges for a cross-venue hedge. Exiting.")
        sys.exit()
    return instruments, exchanges

def generate_dashboard(engine: HedgeEngine):
    """
    Rich layout: live opportunities, open positions, and a stats footer.
    """
    opp_table = Table(title="📡 Live Opportunities")
    opp_table.add_column("Instrument", style="cyan")
    opp_table.add_column("Buy Spot", style="green")
    opp_table.add_column("Short Futures", style="magenta")
    opp_table.add_column("Gross %", justify="right")
    opp_table.add_column("Net %", justify="right", style="bold green")
    opp_table.add_column("Lifetime", justify="right")

    for opp in engine.latest[:10]:
        opp_table.add_row(
            opp.instrument,
            f"{opp.buy_venue} ${opp.buy_price:,.6f}",
            f"{opp.sell_venue} ${opp.sell_price:,.6f}",
            f"{opp.gross_spread_pct:.3f}",
            f"{opp.net_spread_pct:.3f}",
            f"{opp.lifetime_seconds:.1f}s",
        )

    pos_table = Table(title="📂 Open Positions")
    pos_table.add_column("Trade", style="magenta")
    pos_table.add_column("Spot", justify="right")
    pos_table.add_column("Futures", justify="right")
    pos_table.add_column("Size", justify="right", style="green")
    pos_table.add_column("Status")

    for p in list(engine.ledger.positions.values())[:10]:
        status = "[red]ATTENTION[/red]" if p.needs_attention else p.status.value
        pos_table.add_row(
            p.trade_id,
            f"{p.spot_leg.venue} ${p.spot_leg.price:,.6f}",
            f"{p.futures_leg.venue} ${p.futures_leg.price:,.6f}",
            f"${p.position_size_usd:,.2f}",
            status,
        )

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(opp_table)),
        Layout(Panel(pos_table))
    )

    stats = engine.get_stats()
    stop = " | [bold red]EMERGENCY STOP[/bold red]" if stats['emergency_stop'] else ""
    footer = Panel(
        f"[bold gold1]Trades: {stats['successful_trades']}/{stats['total_trades']} | "
        f"Volume today: ${stats['daily_volume_usd']:,.2f} | Failures: {stats['consecutive_failures']} | "
        f"Scans: {stats['scan_cycles']} (skipped {stats['skipped_cycles']})[/bold gold1]{stop}",
        style="white on blue",
    )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

async def run(config):
    logger = setup_console_logger("hedgearb", config['system']['log_level'])
    audit_log = AsyncAuditLogger(config['audit']['trade_log'])
    engine = HedgeEngine(config, audit_log=audit_log, logger=logger)
    try:
        print("Initializing Diagnostic Checks...")
        is_healthy = await engine.start()
        if not is_healthy:
            print("❌ Diagnostic Failed. Check API Keys.")
            return

        scanner = asyncio.create_task(engine.run())
        console = Console()
        with Live(console=console, refresh_per_second=4) as live:
            while not scanner.done():
                live.update(generate_dashboard(engine))
                await asyncio.sleep(0.25)
    finally:
        print("Shutting down resources...")
        await engine.shutdown()

if __name__ == "__main__":
    raw_conf = load_config()
    try:
        sel_instruments, sel_exs = startup_selection(raw_conf)
        raw_conf['scanner']['instruments'] = sel_instruments
        raw_conf['exchanges'] = {k: v for k, v in raw_conf['exchanges'].items() if k in sel_exs}
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(run(raw_conf))
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
