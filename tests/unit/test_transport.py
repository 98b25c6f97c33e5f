"""
Unit tests for the shared REST and streaming transport hooks
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from optionflow.brokers.tradier import TradierSession
from optionflow.utils.error_handler import AuthError, NetworkError


def http_returning(response):
    """aiohttp session double whose request() yields ``response``"""
    http = MagicMock(closed=False)
    http.request.return_value.__aenter__.return_value = response
    return http


@pytest.fixture
def session(tradier_config, stream_config):
    return TradierSession("token", tradier_config=tradier_config, stream_config=stream_config)


class TestRequestJson:
    """Test HTTP status mapping in _request_json"""

    @pytest.mark.asyncio
    async def test_json_body(self, session):
        response = MagicMock(status=200)
        response.json = AsyncMock(return_value={'ok': True})
        session._http = http_returning(response)

        body = await session._request_json('GET', 'https://api.example/v1/x', params={'a': '1'})

        assert body == {'ok': True}
        _, kwargs = session._http.request.call_args
        assert kwargs['params'] == {'a': '1'}
        assert 'ssl' not in kwargs

    @pytest.mark.asyncio
    async def test_no_content(self, session):
        session._http = http_returning(MagicMock(status=204))

        assert await session._request_json('POST', 'https://api.example/v1/x') == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credentials(self, session, status):
        session._http = http_returning(MagicMock(status=status))

        with pytest.raises(AuthError):
            await session._request_json('GET', 'https://api.example/v1/x')

    @pytest.mark.asyncio
    async def test_server_error(self, session):
        response = MagicMock(status=503)
        response.text = AsyncMock(return_value="maintenance")
        session._http = http_returning(response)

        with pytest.raises(NetworkError) as exc_info:
            await session._request_json('GET', 'https://api.example/v1/x')
        assert "503" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_client_error_becomes_network_error(self, session):
        http = MagicMock(closed=False)
        http.request.side_effect = aiohttp.ClientConnectionError("refused")
        session._http = http

        with pytest.raises(NetworkError):
            await session._request_json('GET', 'https://api.example/v1/x')

    @pytest.mark.asyncio
    async def test_unverified_ssl(self, session):
        response = MagicMock(status=200)
        response.json = AsyncMock(return_value=[])
        session._http = http_returning(response)
        session.verify_ssl = False

        await session._request_json('GET', 'https://localhost:5000/v1/api/x', json_body={'k': 1})

        _, kwargs = session._http.request.call_args
        assert kwargs['ssl'] is False
        assert kwargs['json'] == {'k': 1}


class TestOpenStream:
    """Test status mapping for long-lived HTTP streams"""

    @pytest.mark.asyncio
    async def test_rejected_stream(self, session):
        response = MagicMock(status=401)
        session._http = MagicMock(closed=False)
        session._http.get = AsyncMock(return_value=response)

        with pytest.raises(AuthError):
            await session._open_stream('https://api.example/v3/marketdata/stream/quotes/MSFT')
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_stream(self, session):
        response = MagicMock(status=404)
        response.text = AsyncMock(return_value="no such symbol")
        session._http = MagicMock(closed=False)
        session._http.get = AsyncMock(return_value=response)

        with pytest.raises(NetworkError):
            await session._open_stream('https://api.example/v3/marketdata/stream/quotes/XXXX')
        response.release.assert_called_once()


class TestSocketSend:
    """Test outbound frame encoding"""

    @pytest.mark.asyncio
    async def test_send_without_socket(self, session):
        with pytest.raises(NetworkError):
            await session._send({'a': 1})

    @pytest.mark.asyncio
    async def test_dicts_are_json_encoded(self, session):
        session._socket = MagicMock()
        session._socket.send = AsyncMock()

        await session._send({'sessionid': 's', 'symbols': ['QQQ']})
        await session._send("umd+1+{}")

        sent = [c.args[0] for c in session._socket.send.await_args_list]
        assert sent == ['{"sessionid": "s", "symbols": ["QQQ"]}', "umd+1+{}"]
