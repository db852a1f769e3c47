"""
Unit tests for spreadarb.trade_volume
"""
from decimal import Decimal, ROUND_DOWN, ROUND_UP

import pytest

from spreadarb.decimals import set_scale
from spreadarb.models import FeeComputation
from spreadarb.trade_volume import (
    EntryTradeVolume,
    ExitTradeVolume,
    get_buy_base_fees,
    get_long_volume_from_exposures,
    get_long_volume_from_short,
    get_sell_base_fees,
    get_short_to_long_volume_target_ratio,
    get_short_volume_from_long,
    market_neutrality_rating,
    round_by_step,
)

SERVER = FeeComputation.SERVER
CLIENT = FeeComputation.CLIENT
FEE_MODES = [(SERVER, SERVER), (SERVER, CLIENT), (CLIENT, SERVER), (CLIENT, CLIENT)]


def entry_volume(long_fc, short_fc, long_fee="0.002", short_fee="0.0026"):
    return EntryTradeVolume.create(
        long_fc, short_fc,
        Decimal("100"), Decimal("100"),
        Decimal("950"), Decimal("1050"),
        Decimal(long_fee), Decimal(short_fee))


class TestVolumeRatio:
    """Test the fee derived long/short ratio"""

    @pytest.mark.parametrize("long_fee,short_fee,expected", [
        ("0.05", "0.01", "1.06315789473684"),
        ("0.005", "0.0026", "1.00763819095477"),
        ("0", "0", "1.00000000000000"),
    ])
    def test_target_ratio(self, long_fee, short_fee, expected):
        """Ratio is (1 + shortFee) / (1 - longFee)"""
        ratio = get_short_to_long_volume_target_ratio(Decimal(long_fee), Decimal(short_fee))
        assert set_scale(ratio, 14) == Decimal(expected)

    def test_long_volume_from_exposures(self):
        """The short exchange binds first when its price is higher"""
        volume = get_long_volume_from_exposures(
            Decimal("100"), Decimal("100"), Decimal("950"), Decimal("1050"),
            Decimal("0.001"), Decimal("0.001"))
        assert set_scale(volume, 15) == Decimal("0.095428762095429")

    def test_long_volume_from_exposures_long_binds(self):
        """A small long exposure caps the volume at exposure / price"""
        volume = get_long_volume_from_exposures(
            Decimal("10"), Decimal("100"), Decimal("100"), Decimal("100"),
            Decimal("0.001"), Decimal("0.001"))
        assert volume == Decimal("0.1000000000000000")

    @pytest.mark.parametrize("volume", ["0.00000001", "0.5", "1", "13.37", "12345.6789"])
    def test_long_short_round_trip(self, volume):
        """short(long(v)) gets back to v within the intermediate scale"""
        v = Decimal(volume)
        lf, sf = Decimal("0.0026"), Decimal("0.005")
        result = get_short_volume_from_long(get_long_volume_from_short(v, lf, sf), lf, sf)
        assert abs(result - v) < Decimal("1e-14")


class TestRoundByStep:
    """Test step size rounding"""

    @pytest.mark.parametrize("value,step,expected", [
        ("64", "5", "65"),
        ("65", "10", "60"),
        ("75", "10", "80"),
        ("66", "10", "70"),
        ("0.0343", "0.01", "0.03"),
        ("0.0353", "0.01", "0.04"),
    ])
    def test_ties_round_to_even(self, value, step, expected):
        """Half way values go to the even multiple"""
        assert round_by_step(Decimal(value), Decimal(step)) == Decimal(expected)

    def test_no_step_is_identity(self):
        """Exchanges without a step size keep the value untouched"""
        assert round_by_step(Decimal("1.23456789"), None) == Decimal("1.23456789")

    def test_explicit_rounding(self):
        """Exits round down or up depending on the leg"""
        assert round_by_step(Decimal("0.0359"), Decimal("0.01"), ROUND_DOWN) == Decimal("0.03")
        assert round_by_step(Decimal("0.0341"), Decimal("0.01"), ROUND_UP) == Decimal("0.04")


class TestBaseFees:
    """Test CLIENT side fee inflation and deflation"""

    def test_server_has_no_base_fees(self):
        assert get_buy_base_fees(SERVER, Decimal("1.00000000"), None, True) == Decimal("0")
        assert get_sell_base_fees(SERVER, Decimal("1.00000000"), None, False) == Decimal("0")

    def test_client_buy_fees(self):
        """Order volume fee is volume * fee, underlying volume fee is volume * fee / (1 - fee)"""
        fee = Decimal("0.002")
        assert get_buy_base_fees(CLIENT, Decimal("1.00000000"), fee, True) == Decimal("0.00200000")
        assert get_buy_base_fees(CLIENT, Decimal("1.00000000"), fee, False) == Decimal("0.00200401")

    def test_client_sell_fees(self):
        """Underlying volume fee is volume * fee / (1 + fee)"""
        fee = Decimal("0.002")
        assert get_sell_base_fees(CLIENT, Decimal("1.00000000"), fee, True) == Decimal("0.00200000")
        assert get_sell_base_fees(CLIENT, Decimal("1.00000000"), fee, False) == Decimal("0.00199601")

    def test_client_fee_too_high(self):
        """CLIENT fees of 1% or more are refused"""
        with pytest.raises(ValueError):
            get_buy_base_fees(CLIENT, Decimal("1"), Decimal("0.01"), True)


class TestMarketNeutrality:
    """Test the neutrality rating"""

    @pytest.mark.parametrize("long_fc,short_fc", FEE_MODES)
    def test_entry_volume_is_neutral(self, long_fc, short_fc):
        """A freshly sized entry compensates the fees exactly, in every fee mode"""
        volume = entry_volume(long_fc, short_fc)
        assert abs(volume.market_neutrality_rating() - Decimal("1")) < Decimal("1e-10")
        assert volume.is_market_neutral()

    def test_equal_volumes_rate_zero(self):
        """Equal legs do not compensate the fees at all"""
        rating = market_neutrality_rating(Decimal("1"), Decimal("1"), Decimal("0.002"), Decimal("0.002"))
        assert rating == Decimal("0")

    def test_zero_fees(self):
        """Without fees, only matching legs are neutral"""
        assert market_neutrality_rating(Decimal("1"), Decimal("1"), Decimal("0"), Decimal("0")) == Decimal("1")
        assert not market_neutrality_rating(Decimal("1.1"), Decimal("1"), Decimal("0"), Decimal("0")).is_finite()

    def test_deviation_bound(self):
        """The acceptable band around 1 is configurable"""
        volume = entry_volume(SERVER, SERVER)
        volume.long_volume = volume.long_volume * Decimal("1.01")
        assert not volume.is_market_neutral(Decimal("1"))
        assert volume.is_market_neutral(Decimal("100"))


class TestEntryTradeVolume:
    """Test entry order volume adjustments"""

    @pytest.mark.parametrize("long_fc,short_fc", FEE_MODES)
    def test_adjust_without_steps(self, long_fc, short_fc):
        """Order volumes land on the exchange scale and stay close to neutral"""
        volume = entry_volume(long_fc, short_fc)
        volume.adjust_order_volume("alpha", "beta", None, None, 8, 8)

        assert volume.long_order_volume == set_scale(volume.long_order_volume, 8)
        assert volume.short_order_volume == set_scale(volume.short_order_volume, 8)
        assert abs(volume.market_neutrality_rating() - Decimal("1")) < Decimal("0.01")

    def test_client_buys_more_and_sells_less(self):
        """CLIENT legs pay their fee out of the base currency"""
        volume = entry_volume(CLIENT, CLIENT)
        volume.adjust_order_volume("alpha", "beta", None, None, 8, 8)

        assert volume.long_order_volume > volume.long_volume
        assert volume.short_order_volume < volume.short_volume

    def test_long_step_drives_short(self):
        """With a long step size the short leg is derived from the rounded long leg"""
        volume = EntryTradeVolume.create(
            SERVER, SERVER, Decimal("1000"), Decimal("1000"), Decimal("100"), Decimal("100"),
            Decimal("0.002"), Decimal("0.002"))
        volume.adjust_order_volume("alpha", "beta", Decimal("0.1"), None, 8, 8)

        assert volume.long_order_volume == Decimal("10.00000000")
        assert volume.short_volume == set_scale(
            get_short_volume_from_long(volume.long_volume, volume.long_fee, volume.short_fee), 8)

    def test_short_step_drives_long(self):
        """With a short step size the long leg is derived from the rounded short leg"""
        volume = EntryTradeVolume.create(
            SERVER, SERVER, Decimal("1000"), Decimal("1000"), Decimal("100"), Decimal("100"),
            Decimal("0.002"), Decimal("0.002"))
        volume.adjust_order_volume("alpha", "beta", None, Decimal("0.5"), 8, 8)

        assert volume.short_order_volume % Decimal("0.5") == 0
        assert volume.long_volume == set_scale(
            get_long_volume_from_short(volume.short_volume, volume.long_fee, volume.short_fee), 8)

    def test_both_steps_only_rate(self):
        """With two step sizes both legs are rounded independently"""
        volume = EntryTradeVolume.create(
            SERVER, SERVER, Decimal("1000"), Decimal("1000"), Decimal("100"), Decimal("100"),
            Decimal("0.002"), Decimal("0.002"))
        volume.adjust_order_volume("alpha", "beta", Decimal("1"), Decimal("1"), 8, 8)

        assert volume.long_order_volume == Decimal("10.00000000")
        assert volume.short_order_volume == Decimal("10.00000000")
        assert volume.long_volume == volume.long_order_volume

    def test_client_with_step_is_refused(self):
        """CLIENT fee computation and step sizes cannot be combined"""
        volume = entry_volume(CLIENT, SERVER)
        with pytest.raises(ValueError):
            volume.adjust_order_volume("alpha", "beta", Decimal("0.01"), None, 8, 8)


class TestExitTradeVolume:
    """Test unwinding entry volumes"""

    def test_server_exit_matches_entry(self):
        """Zero price movement and SERVER fees exit exactly what was entered"""
        entry = entry_volume(SERVER, SERVER)
        exit_volume = ExitTradeVolume.create(
            SERVER, SERVER, entry.long_order_volume, entry.short_order_volume,
            Decimal("0.002"), Decimal("0.0026"))

        assert exit_volume.long_volume == entry.long_volume
        assert exit_volume.short_volume == entry.short_volume

    @pytest.mark.parametrize("long_fc,short_fc", FEE_MODES)
    def test_exit_never_sells_more_than_held(self, long_fc, short_fc):
        """The long leg sells at most what it holds, the short leg buys back at least what it owes"""
        entry = entry_volume(long_fc, short_fc)
        entry.adjust_order_volume("alpha", "beta", None, None, 8, 8)

        exit_volume = ExitTradeVolume.create(
            long_fc, short_fc, entry.long_order_volume, entry.short_order_volume,
            Decimal("0.002"), Decimal("0.0026"))
        exit_volume.adjust_order_volume("alpha", "beta", None, None, 8, 8)

        held = entry.long_order_volume - get_buy_base_fees(long_fc, entry.long_order_volume, Decimal("0.002"), True)
        owed = entry.short_order_volume + get_sell_base_fees(short_fc, entry.short_order_volume, Decimal("0.0026"), True)

        assert exit_volume.long_order_volume <= held
        assert exit_volume.short_volume >= owed - Decimal("0.00000001")

    def test_exit_rounds_by_step(self):
        """The long leg rounds down and the short leg rounds up to the step size"""
        exit_volume = ExitTradeVolume.create(
            SERVER, SERVER, Decimal("1.2345"), Decimal("1.2345"), Decimal("0.002"), Decimal("0.002"))
        exit_volume.adjust_order_volume("alpha", "beta", Decimal("0.01"), Decimal("0.01"), 8, 8)

        assert exit_volume.long_order_volume == Decimal("1.23000000")
        assert exit_volume.short_order_volume == Decimal("1.24000000")
