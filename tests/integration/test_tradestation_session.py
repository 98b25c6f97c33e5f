"""
Integration tests for the TradeStation HTTP streaming session
"""

import json

import pytest

from optionflow.brokers.tradestation import TradeStationSession
from optionflow.realtime.types import AggressorSide, EventType, SessionState
from optionflow.utils.error_handler import AuthError, ProtocolError
from tests.helpers import EventRecorder, RestStub, settle, wait_until

QUOTE_STREAM = '/marketdata/stream/quotes/'
OPTION_STREAM = '/marketdata/stream/options/quotes'
NATIVE_OPTION = 'MSFT 220916C305'
OPTION = 'MSFT220916C00305000'


@pytest.fixture
def ts_rest():
    return RestStub({('GET', '/brokerage/accounts'): {'Accounts': [{'AccountID': '11111'}]}})


@pytest.fixture
def session(tradestation_config, stream_config, ts_rest, streams):
    session = TradeStationSession("token", tradestation_config=tradestation_config,
                                  stream_config=stream_config)
    session._request_json = ts_rest
    session._open_stream = streams
    return session


def record_line(**record) -> str:
    return json.dumps(record) + '\n'


class TestTradeStationStreams:
    """Test stream grouping, GoAway rotation and NDJSON framing"""

    @pytest.mark.asyncio
    async def test_symbols_are_grouped(self, session, streams):
        await session.subscribe(['MSFT', 'AAPL', 'SPY'])
        await session.connect()
        await settle()

        urls = sorted(s.url for s in streams.opened_for(QUOTE_STREAM))
        assert urls == [
            "https://api.tradestation.com/v3/marketdata/stream/quotes/MSFT%2CAAPL",
            "https://api.tradestation.com/v3/marketdata/stream/quotes/SPY",
        ]
        assert sorted(session.active_streams()) == ['quotes', 'quotes_2']
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_go_away_restarts_same_stream(self, session, streams):
        await session.subscribe(['MSFT', 'AAPL', 'SPY'])
        await session.connect()
        await settle()
        recorder = EventRecorder(session)
        first = streams.opened_for('MSFT%2CAAPL')[0]

        first.push(record_line(StreamStatus='GoAway'))
        await wait_until(lambda: len(streams.opened_for('MSFT%2CAAPL')) == 2)

        restarted = streams.opened_for('MSFT%2CAAPL')[1]
        assert restarted.url == first.url
        assert restarted.params == first.params
        assert first.closed
        assert recorder.of(EventType.ERROR) == []
        assert recorder.of(EventType.DISCONNECTED) == []
        assert len(streams.opened_for('/quotes/SPY')) == 1
        assert session.is_connected()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_records_split_across_chunks(self, session, streams):
        await session.subscribe(['MSFT'])
        await session.connect()
        await settle()
        stream = streams.opened_for(QUOTE_STREAM)[0]

        stream.push('{"Symbol": "MSFT", "Bid": "305.1')
        stream.push('0", "Ask": "305.20", "BidSize": "3", "Last": "305.15", "Volume": "1000"}\n{"Heart')
        stream.push('beat": 1, "Timestamp": "2022-09-16T14:00:00Z"}\n{"StreamStatus": "EndSnapshot"}\n')
        await settle()

        ticker = session.get_ticker('MSFT')
        assert ticker.bid == 305.10
        assert ticker.ask == 305.20
        assert ticker.volume == 1000
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_multibyte_character_split(self, session, streams):
        await session.subscribe(['MSFT'])
        await session.connect()
        await settle()
        stream = streams.opened_for(QUOTE_STREAM)[0]

        record = {'Symbol': 'MSFT', 'Bid': '1.5', 'Description': 'café'}
        payload = (json.dumps(record, ensure_ascii=False) + '\n').encode('utf-8')
        split = payload.index('é'.encode('utf-8')) + 1
        stream.push(payload[:split])
        stream.push(payload[split:])
        await settle()

        assert session.get_ticker('MSFT').bid == 1.5
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_error_record_reported(self, session, streams):
        await session.subscribe(['MSFT'])
        await session.connect()
        await settle()
        recorder = EventRecorder(session)

        streams.opened_for(QUOTE_STREAM)[0].push(record_line(Error='DualLogon', Message='session replaced'))
        await settle()

        assert isinstance(recorder.of(EventType.ERROR)[0], ProtocolError)
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_unexpected_end_reconnects_session(self, session, streams):
        await session.subscribe(['MSFT'])
        await session.connect()
        await settle()
        recorder = EventRecorder(session)

        streams.opened_for(QUOTE_STREAM)[0].end()
        await wait_until(lambda: len(streams.opened_for(QUOTE_STREAM)) == 2 and session.is_connected())

        assert recorder.of(EventType.DISCONNECTED)[0].reason == "stream quotes ended"
        assert len(recorder.of(EventType.CONNECTED)) == 1
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_stale_group(self, session, streams):
        await session.subscribe(['MSFT', 'AAPL', 'SPY'])
        await session.connect()
        await settle()

        await session.unsubscribe(['SPY'])
        await settle()

        assert session.active_streams() == ['quotes']
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_stream_auth_failure_reported(self, session):
        async def reject(url, headers=None, params=None):
            raise AuthError("HTTP 401")

        session._open_stream = reject
        await session.subscribe(['MSFT'])
        recorder = EventRecorder(session)
        await session.connect()
        await settle()

        assert isinstance(recorder.of(EventType.ERROR)[0], AuthError)
        await session.disconnect()


class TestTradeStationOptions:
    """Test option leg streams and inferred trades"""

    @pytest.mark.asyncio
    async def test_option_stream_parameters(self, session, streams):
        await session.connect()
        await session.subscribe([NATIVE_OPTION])
        await settle()

        stream = streams.opened_for(OPTION_STREAM)[0]
        assert stream.params == {
            'legs[0].Symbol': NATIVE_OPTION,
            'legs[0].Ratio': '1',
            'enableGreeks': 'true',
        }
        assert session.get_subscribed_options() == [OPTION]
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_inferred_trade_from_volume(self, session, streams):
        await session.connect()
        await session.subscribe([OPTION])
        await settle()
        recorder = EventRecorder(session)
        stream = streams.opened_for(OPTION_STREAM)[0]

        stream.push(record_line(Bid='1.00', Ask='1.10', Last='1.05', Volume='10',
                                DailyOpenInterest='500', Legs=[{'Symbol': NATIVE_OPTION}]))
        stream.push(record_line(Bid='1.00', Ask='1.10', Last='1.10', Volume='15',
                                Legs=[{'Symbol': NATIVE_OPTION}]))
        await settle()

        option = session.get_option(OPTION)
        trades = recorder.of(EventType.OPTION_TRADE)
        assert len(trades) == 1
        assert trades[0].size == 5
        assert trades[0].aggressor_side is AggressorSide.BUY
        assert option.live_open_interest == 505
        assert option.volume == 15
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_wrongly_shaped_record_is_dropped(self, session, streams):
        await session.connect()
        await session.subscribe([OPTION])
        await settle()
        recorder = EventRecorder(session)
        stream = streams.opened_for(OPTION_STREAM)[0]

        stream.push(record_line(Bid='1.00', Ask='1.10', Legs=['not a leg']))
        stream.push(record_line(Bid='1.00', Ask='1.10', Legs=[{'Symbol': NATIVE_OPTION}]))
        await settle()

        assert session.get_option(OPTION).ask == 1.10
        assert recorder.of(EventType.ERROR) == []
        assert len(streams.opened_for(OPTION_STREAM)) == 1
        assert session.is_connected()
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_chain_stream(self, session, streams):
        await session.connect()
        await session.stream_option_chain('msft', expiration='2022-09-16', strike_proximity=5)
        await settle()

        stream = streams.opened_for('/marketdata/stream/options/chains/MSFT')[0]
        assert stream.params == {'expiration': '2022-09-16', 'strikeProximity': '5'}
        assert 'chain_MSFT' in session.active_streams()

        await session.stop_option_chain('MSFT')
        await settle()
        assert 'chain_MSFT' not in session.active_streams()
        await session.disconnect()


class TestTradeStationREST:
    """Test snapshot endpoints"""

    @pytest.mark.asyncio
    async def test_options_chain(self, session, ts_rest):
        ts_rest.route('GET', '/marketdata/options/strikes/MSFT', {'Strikes': [['300'], ['305']]})

        contracts = await session.fetch_options_chain('MSFT', '2022-09-16')

        assert all(c.expiration == '2022-09-16' and c.bid == 0 for c in contracts)
        assert [c.occ_symbol for c in contracts] == ['MSFT220916C00300000', 'MSFT220916P00300000',
                                                'MSFT220916C00305000', 'MSFT220916P00305000']

    @pytest.mark.asyncio
    async def test_open_interest_backfill(self, session, ts_rest):
        ts_rest.route('GET', '/marketdata/quotes/MSFT%20220916C305', {'Quotes': [
            {'Symbol': NATIVE_OPTION, 'DailyOpenInterest': '777', 'Bid': '1.0', 'Ask': '1.1'},
        ]})

        await session.fetch_open_interest([OPTION])

        assert session.cache.estimator.get_base_open_interest(OPTION) == 777
        assert session.get_option(OPTION).open_interest == 777

    @pytest.mark.asyncio
    async def test_fetch_quotes_skips_errors(self, session, ts_rest):
        ts_rest.route('GET', '/marketdata/quotes/MSFT%2CAAPL', {'Quotes': [
            {'Symbol': 'MSFT', 'Bid': '305.1', 'Ask': '305.2'},
            {'Symbol': 'AAPL', 'Error': 'not entitled'},
        ]})

        tickers = await session.fetch_quotes(['msft', 'aapl'])

        assert [t.symbol for t in tickers] == ['MSFT']

    @pytest.mark.asyncio
    async def test_symbol_details_batches(self, session, ts_rest):
        ts_rest.route('GET', '', lambda params: {'Symbols': [{'Symbol': 'X'}], 'Errors': []})

        details = await session.fetch_symbol_details([f"S{n}" for n in range(120)])

        assert len(ts_rest.calls) == 3
        assert len(details['Symbols']) == 3

    @pytest.mark.asyncio
    async def test_bad_token_fails_connect(self, session, ts_rest):
        ts_rest.route('GET', '/brokerage/accounts', AuthError("HTTP 401"))

        with pytest.raises(AuthError):
            await session.connect()
        assert session.state is SessionState.DISCONNECTED
