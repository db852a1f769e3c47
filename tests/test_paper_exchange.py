"""
Unit tests for spreadarb.paper_exchange
"""
import asyncio
from decimal import Decimal

import ccxt.async_support as ccxt
import pytest

from spreadarb.models import MarginNotSupportedError, OrderStatus, PaperOrder
from spreadarb.paper_exchange import PaperExchange

from conftest import FakeGateway, ticker


def paper(config, logger, name='alpha', auto_fill=True, **exchange_cfg) -> PaperExchange:
    cfg = {**config['exchanges'][name], **exchange_cfg}
    return PaperExchange(FakeGateway(name, cfg), {**config['paper'], 'auto_fill': auto_fill}, logger)


@pytest.mark.asyncio
class TestBalances:

    async def test_seeded_with_home_currency(self, config, logger):
        exchange = paper(config, logger)

        assert await exchange.get_home_balance() == Decimal("1000.00")
        assert await exchange.get_balance("BTC") == Decimal("0E-8")
        assert await exchange.get_non_empty_trading_coins() == set()

    async def test_server_fee_taken_from_quote(self, config, logger):
        exchange = paper(config, logger)
        await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("100"))

        assert await exchange.get_home_balance() == Decimal("899.90")
        assert await exchange.get_balance("BTC") == Decimal("1.00000000")
        assert await exchange.get_non_empty_trading_coins() == {"BTC"}

    async def test_client_fee_taken_from_base(self, config, logger):
        exchange = paper(config, logger, fee_computation='CLIENT')
        await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("100"))

        assert await exchange.get_home_balance() == Decimal("900.00")
        assert await exchange.get_balance("BTC") == Decimal("0.99900000")

    async def test_empty_balance_removed(self, config, logger):
        exchange = paper(config, logger, trade_fee=Decimal("0"))
        await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("100"))
        await exchange.update_orders()
        await exchange.place_limit_order('sell', 'BTC/USD', Decimal("1"), Decimal("100"))
        await exchange.update_orders()

        assert "BTC" not in exchange.ledger
        assert exchange.ledger["USD"] == Decimal("1000.00")


@pytest.mark.asyncio
class TestOrderChecks:

    async def test_insufficient_quote(self, config, logger):
        exchange = paper(config, logger)
        with pytest.raises(ccxt.InsufficientFunds):
            await exchange.place_limit_order('buy', 'BTC/USD', Decimal("20"), Decimal("100"))
        assert exchange.orders == []

    async def test_insufficient_base(self, config, logger):
        exchange = paper(config, logger)
        with pytest.raises(ccxt.InsufficientFunds):
            await exchange.place_limit_order('sell', 'BTC/USD', Decimal("1"), Decimal("100"))

    async def test_leverage_needs_margin(self, config, logger):
        exchange = paper(config, logger)
        with pytest.raises(MarginNotSupportedError):
            await exchange.place_limit_order('sell', 'BTC/USD', Decimal("1"), Decimal("100"), leverage="2")

    async def test_margin_account_can_short(self, config, logger):
        """Leveraged sells skip the balance check and may leave a negative base balance"""
        exchange = paper(config, logger, name='beta')
        await exchange.place_limit_order('sell', 'BTC/USD', Decimal("1"), Decimal("110"), leverage="2")
        await exchange.update_orders()

        assert exchange.ledger["BTC"] == Decimal("-1")
        assert exchange.ledger["USD"] == Decimal("1109.89")


@pytest.mark.asyncio
class TestFills:

    async def test_fill_when_price_crosses(self, config, logger):
        exchange = paper(config, logger, auto_fill=False)
        exchange.gateway.tickers['BTC/USD'] = ticker('alpha', 100, 101)

        order_id = await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("100"))
        assert len(await exchange.get_open_orders()) == 1

        exchange.gateway.tickers['BTC/USD'] = ticker('alpha', 99, 100)
        assert await exchange.get_open_orders('BTC/USD') == []

        order = await exchange.get_order(order_id)
        assert order['status'] == OrderStatus.FILLED.value
        assert order['average'] == Decimal("100")
        assert len(exchange.trades) == 1

    async def test_ticker_lookup_preferred(self, config, logger):
        gateway = FakeGateway('alpha', config['exchanges']['alpha'])
        exchange = PaperExchange(gateway, {**config['paper'], 'auto_fill': False}, logger,
                                 ticker_lookup=lambda ex, pair: ticker(ex, 120, 121))
        exchange.put_coin("BTC", Decimal("1"))

        await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("100"))
        await exchange.place_limit_order('sell', 'BTC/USD', Decimal("0.5"), Decimal("110"))
        await exchange.update_orders()

        statuses = [o.status for o in exchange.orders]
        assert statuses == [OrderStatus.NEW, OrderStatus.FILLED]

    async def test_cancel(self, config, logger):
        exchange = paper(config, logger, auto_fill=False)
        order_id = await exchange.place_limit_order('buy', 'BTC/USD', Decimal("1"), Decimal("90"))

        assert await exchange.cancel_order(order_id) is True
        assert await exchange.cancel_order(order_id) is False
        assert await exchange.get_open_orders() == []

    async def test_unknown_order(self, config, logger):
        exchange = paper(config, logger)
        with pytest.raises(ccxt.OrderNotFound):
            await exchange.get_order("missing")

    async def test_concurrent_updates_fill_once(self, config, logger):
        """The background loop and a caller's order query may update at the same time"""
        class YieldingGateway(FakeGateway):
            async def get_exchange_fee(self, pair, quiet=True):
                await asyncio.sleep(0)
                return await super().get_exchange_fee(pair, quiet)

        exchange = PaperExchange(YieldingGateway('alpha', config['exchanges']['alpha']),
                                 {**config['paper'], 'auto_fill': True}, logger)
        exchange.orders.append(PaperOrder(id="A-1", side='buy', pair='BTC/USD', amount=Decimal("1"),
                                          limit_price=Decimal("100"), timestamp=0.0))

        await asyncio.gather(exchange.update_orders(), exchange.update_orders())

        assert exchange.ledger["BTC"] == Decimal("1")
        assert exchange.ledger["USD"] == Decimal("899.90")
        assert len(exchange.trades) == 1
