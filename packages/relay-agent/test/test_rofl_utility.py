#!/usr/bin/env python3
"""Tests for RoflUtility class.

This module tests the ROFL interaction utilities including
socket communication, CBOR decoding, and transaction submission.
"""

import codecs
import unittest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import cbor2
import httpx
import pytest
from web3.types import TxParams

from relay_agent.utils.rofl_utility import RoflSubmissionError, RoflUtility


def _mock_client(mock_client_class, payload=None):
    mock_client = AsyncMock()
    mock_response = MagicMock()
    mock_response.json = MagicMock(return_value=payload or {"result": "success"})
    mock_response.raise_for_status = MagicMock()
    mock_client.post = AsyncMock(return_value=mock_response)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


class TestRoflUtility(unittest.IsolatedAsyncioTestCase):
    """Test cases for RoflUtility class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_tx: TxParams = {
            "gas": 300000,
            "to": "0x1234567890123456789012345678901234567890",
            "value": 0,
            "data": "0xabcdef"
        }

    async def test_init_default(self):
        """Test default initialization."""
        utility = RoflUtility()
        assert utility.url == ''
        assert utility.timeout == 30.0

    async def test_init_with_url(self):
        """Test initialization with custom URL."""
        test_url = "http://localhost:8080"
        utility = RoflUtility(test_url)
        assert utility.url == test_url

    @patch('relay_agent.utils.rofl_utility.httpx.AsyncClient')
    async def test_appd_post_unix_socket(self, mock_client_class):
        """Test _appd_post using Unix domain socket (default)."""
        mock_client = _mock_client(mock_client_class)

        utility = RoflUtility()
        result = await utility._appd_post("/test/path", {"test": "data"})

        # Verify Unix socket transport was used
        mock_client_class.assert_called_once()
        transport_arg = mock_client_class.call_args[1]['transport']
        assert isinstance(transport_arg, httpx.AsyncHTTPTransport)

        mock_client.post.assert_called_once_with(
            "http://localhost/test/path",
            json={"test": "data"},
            timeout=30.0
        )
        assert result == {"result": "success"}

    @patch('relay_agent.utils.rofl_utility.httpx.AsyncClient')
    async def test_appd_post_http_url(self, mock_client_class):
        """Test _appd_post using HTTP URL."""
        mock_client = _mock_client(mock_client_class)

        utility = RoflUtility("http://test.server:8080", timeout=5.0)
        result = await utility._appd_post("/test/path", {"test": "data"})

        assert mock_client_class.call_args[1]['transport'] is None
        mock_client.post.assert_called_once_with(
            "http://test.server:8080/test/path",
            json={"test": "data"},
            timeout=5.0
        )
        assert result == {"result": "success"}

    @patch('relay_agent.utils.rofl_utility.httpx.AsyncClient')
    async def test_appd_post_socket_path(self, mock_client_class):
        """Test _appd_post using custom socket path."""
        _mock_client(mock_client_class)

        utility = RoflUtility("/custom/socket.sock")
        result = await utility._appd_post("/test/path", {"test": "data"})

        transport_arg = mock_client_class.call_args[1]['transport']
        assert isinstance(transport_arg, httpx.AsyncHTTPTransport)
        assert result == {"result": "success"}

    @patch('relay_agent.utils.rofl_utility.httpx.AsyncClient')
    async def test_appd_post_error_handling(self, mock_client_class):
        """Test _appd_post error handling."""
        mock_client = AsyncMock()
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock(side_effect=httpx.HTTPStatusError(
            "Server error", request=Mock(), response=Mock()
        ))
        mock_client.post = AsyncMock(return_value=mock_response)
        mock_client_class.return_value.__aenter__.return_value = mock_client

        utility = RoflUtility()

        with pytest.raises(httpx.HTTPStatusError):
            await utility._appd_post("/test/path", {"test": "data"})

    def test_decode_cbor_response_success(self):
        """Test successful CBOR response decoding."""
        test_data = {"status": "ok", "value": 123}
        hex_string = codecs.encode(cbor2.dumps(test_data), "hex").decode()

        result = RoflUtility()._decode_cbor_response(hex_string)

        assert result == test_data

    def test_decode_cbor_response_non_dict(self):
        """Test CBOR decoding with non-dict result."""
        hex_string = codecs.encode(cbor2.dumps("simple_string"), "hex").decode()

        result = RoflUtility()._decode_cbor_response(hex_string)

        assert result == {"data": "simple_string"}

    def test_decode_cbor_response_invalid_hex(self):
        """Test CBOR decoding with invalid hex string."""
        result = RoflUtility()._decode_cbor_response("zzzinvalidhex")

        assert result["error"] == "decode_failed"
        assert result["raw"] == "zzzinvalidhex"

    @patch.object(RoflUtility, '_appd_post')
    @patch.object(RoflUtility, '_decode_cbor_response')
    async def test_submit_tx_success(self, mock_decode, mock_appd_post):
        """Test successful transaction submission."""
        mock_appd_post.return_value = {"data": "cbor_response_hex"}
        mock_decode.return_value = {"ok": b""}

        result = await RoflUtility().submit_tx(self.test_tx)

        expected_payload = {
            "tx": {
                "kind": "eth",
                "data": {
                    "gas_limit": 300000,
                    "to": "1234567890123456789012345678901234567890",
                    "value": 0,
                    "data": "abcdef",
                },
            },
            "encrypt": False,
        }

        mock_appd_post.assert_called_once_with('/rofl/v1/tx/sign-submit', expected_payload)
        mock_decode.assert_called_once_with("cbor_response_hex")
        assert result == {"ok": b""}

    @patch.object(RoflUtility, '_appd_post')
    @patch.object(RoflUtility, '_decode_cbor_response')
    async def test_submit_tx_error_response(self, mock_decode, mock_appd_post):
        """Test transaction submission with error response."""
        mock_appd_post.return_value = {"data": "cbor_response_hex"}
        mock_decode.return_value = {"error": "Transaction failed"}

        with pytest.raises(RoflSubmissionError, match="ROFL transaction failed: Transaction failed"):
            await RoflUtility().submit_tx(self.test_tx)

    @patch.object(RoflUtility, '_appd_post')
    @patch.object(RoflUtility, '_decode_cbor_response')
    async def test_submit_tx_failed_call_keeps_revert_message(self, mock_decode, mock_appd_post):
        """A reverted call surfaces the module message so it can be classified."""
        mock_appd_post.return_value = {"data": "cbor_response_hex"}
        mock_decode.return_value = {
            "fail": {"module": "evm", "code": 8, "message": "reverted: already verified"}
        }

        with pytest.raises(RoflSubmissionError, match="already verified"):
            await RoflUtility().submit_tx(self.test_tx)

    @patch.object(RoflUtility, '_appd_post')
    @patch.object(RoflUtility, '_decode_cbor_response')
    async def test_submit_tx_unknown_response(self, mock_decode, mock_appd_post):
        """Test transaction submission with unknown response format."""
        mock_appd_post.return_value = {"data": "cbor_response_hex"}
        mock_decode.return_value = {"unknown_field": "value"}

        with pytest.raises(RoflSubmissionError, match="Unknown ROFL response format"):
            await RoflUtility().submit_tx(self.test_tx)

    @patch.object(RoflUtility, '_appd_post')
    async def test_submit_tx_decodes_real_cbor(self, mock_appd_post):
        """submit_tx decodes the hex CBOR body returned by appd."""
        mock_appd_post.return_value = {"data": cbor2.dumps({"ok": b"\x01"}).hex()}

        result = await RoflUtility().submit_tx(self.test_tx)

        call_args = mock_appd_post.call_args[0][1]
        assert call_args["tx"]["data"]["to"] == "1234567890123456789012345678901234567890"
        assert call_args["tx"]["data"]["data"] == "abcdef"
        assert result == {"ok": b"\x01"}


if __name__ == "__main__":
    unittest.main()
