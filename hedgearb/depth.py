# hedgearb/depth.py
from typing import Any, Dict, List, Sequence

HIGH_SLIPPAGE_PCT = 0.3


def walk_book(levels: Sequence[Sequence[float]], quantity: float) -> Dict[str, float]:
    """
    Fills `quantity` against price levels best-first and reports the average
    fill price, the filled depth and the slippage versus the top of book.
    """
    filled = 0.0
    cost = 0.0
    for level in levels:
        price, qty = float(level[0]), float(level[1])
        if filled >= quantity:
            break
        take = min(qty, quantity - filled)
        cost += take * price
        filled += take

    if filled == 0:
        return {'slippage_pct': 0.0, 'depth': 0.0, 'avg_price': 0.0, 'best_price': 0.0}

    avg_price = cost / filled
    best_price = float(levels[0][0])
    return {
        'slippage_pct': abs((avg_price - best_price) / best_price * 100),
        'depth': filled,
        'avg_price': avg_price,
        'best_price': best_price,
    }


def estimate_slippage(book: Dict[str, List], position_size_usd: float, price: float, side: str = 'buy') -> Dict[str, Any]:
    """
    Predicts slippage of a market order worth position_size_usd.
    Buys walk the asks, sells walk the bids.
    """
    quantity = position_size_usd / price
    levels = book['asks'] if side == 'buy' else book['bids']
    result = walk_book(levels, quantity)

    warning = None
    if result['slippage_pct'] > HIGH_SLIPPAGE_PCT:
        warning = 'HIGH_SLIPPAGE'
    elif result['depth'] < quantity:
        warning = 'LOW_DEPTH'
    return {**result, 'quantity': quantity, 'warning': warning}
