import httpx

from proxy_traffic_mcp.core.models import ConnectionRecord
from proxy_traffic_mcp.core.source import ConnectionSource

# 2023-11-14T22:20:00Z, a multiple of 600 so 10 minute buckets start exactly here
T0 = 1_700_000_400
T0_ISO = "2023-11-14T22:20:00Z"


def record(id, host="a.com", up=0, down=0, start=T0, src="192.168.1.10", chain="proxy-hk"):
    return ConnectionRecord(
        id=id,
        source_address=src,
        host=host,
        upload_bytes=up,
        download_bytes=down,
        started_at=start,
        chain=chain,
    )


def raw_conn(id, host="", remote="1.2.3.4:443", up=0, down=0, start=T0_ISO, chains=None):
    return {
        "id": id,
        "metadata": {
            "network": "tcp",
            "type": "Socks5",
            "sourceIP": "192.168.1.10",
            "host": host,
            "remoteDestination": remote,
        },
        "upload": up,
        "download": down,
        "start": start,
        "chains": chains if chains is not None else ["Auto", "proxy-hk"],
        "rule": "Match",
        "rulePayload": "",
    }


def mock_source(responses, seen=None):
    """
    ConnectionSource backed by httpx.MockTransport.

    Responses are served in order and the last one repeats. Each item is a
    payload dict, an httpx.Response, or an exception to raise.
    """
    queue = list(responses)

    def handler(request):
        if seen is not None:
            seen.append(request)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ConnectionSource("http://controller.test/connections", token="s3cret", client=client)
