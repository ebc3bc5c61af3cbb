import io
import itertools
import os
import sys
import threading
from unittest import mock

import pytest

from vasily import backend
from vasily.backend import Conn, IPVersion
from vasily.messages import OpenConnection, OpenConnectionReply, Shutdown
from vasily.privsep import START_PRIV_FLAG, drop_privileges, initialize, use_privsep

_counter = itertools.count()


class FakeIds:
    def __init__(self, uid, euid, can_regain=False, setuid_error=None):
        self.uid = uid
        self.euid = euid
        self.can_regain = can_regain
        self.setuid_error = setuid_error
        self.calls = []

    def getuid(self):
        return self.uid

    def geteuid(self):
        return self.euid

    def setuid(self, uid):
        self.calls.append(("setuid", uid))
        if self.setuid_error is not None:
            raise self.setuid_error
        self.uid = self.euid = uid

    def seteuid(self, euid):
        self.calls.append(("seteuid", euid))
        if not self.can_regain:
            raise PermissionError(1, "Operation not permitted")
        self.euid = euid

    def patch(self):
        return mock.patch.multiple(
            os,
            getuid=self.getuid,
            geteuid=self.geteuid,
            setuid=self.setuid,
            seteuid=self.seteuid,
            create=True,
        )


class BlockingConn(Conn):
    def __init__(self):
        self._closed = threading.Event()

    def write_to(self, pkt, dest, *args):
        pass

    def read_from(self, timeout=None):
        self._closed.wait()
        raise OSError("use of closed network connection")

    def close(self):
        self._closed.set()


def test_use_privsep_with_raw_sockets():
    assert use_privsep(True) is True


def test_use_privsep_other_platform():
    with mock.patch.object(sys, "platform", "freebsd14"):
        assert use_privsep(False) is True


@pytest.mark.parametrize("platform", ["linux", "darwin"])
def test_use_privsep_unprivileged_platform(platform):
    ids = FakeIds(1000, 1000)
    with mock.patch.object(sys, "platform", platform), ids.patch():
        assert use_privsep(False) is False


def test_use_privsep_rejects_setuid(capsys):
    ids = FakeIds(1000, 0)
    with mock.patch.object(sys, "platform", "linux"), ids.patch():
        with pytest.raises(SystemExit) as exc:
            use_privsep(False)
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "running with setuid" in err
    assert "sudo chmod u-s" in err


def test_drop_privileges_without_setuid():
    ids = FakeIds(500, 500)
    with ids.patch():
        result = drop_privileges()
        assert (os.getuid(), os.geteuid()) == (500, 500)
    assert result is None
    assert ids.calls == []


def test_drop_privileges_drops():
    ids = FakeIds(1000, 0)
    with ids.patch():
        result = drop_privileges()
        assert (os.getuid(), os.geteuid()) == (1000, 1000)
    assert result is None
    assert ids.calls == [("setuid", 1000), ("seteuid", 0)]


def test_drop_privileges_regain_is_an_error():
    ids = FakeIds(1000, 0, can_regain=True)
    with ids.patch():
        with pytest.raises(PermissionError, match="unexpectedly able to regain root"):
            drop_privileges()


def test_drop_privileges_setuid_failure():
    ids = FakeIds(1000, 0, setuid_error=PermissionError(1, "Operation not permitted"))
    with ids.patch():
        with pytest.raises(OSError, match="setuid"):
            drop_privileges()


def _fake_stdio(data):
    stdin = io.TextIOWrapper(io.BytesIO(data))
    out_bytes = io.BytesIO()
    stdout = io.TextIOWrapper(out_bytes)
    return stdin, stdout, out_bytes


def test_initialize_privileged_shutdown():
    stdin, stdout, _ = _fake_stdio(Shutdown().encode())
    with mock.patch.object(sys, "platform", "freebsd14"), \
            mock.patch.object(sys, "stdin", stdin), mock.patch.object(sys, "stdout", stdout):
        with pytest.raises(SystemExit) as exc:
            initialize(["vasily", START_PRIV_FLAG])
    assert exc.value.code == 0


def test_initialize_privileged_opens_connection():
    name = f"fake-privsep:{next(_counter)}"
    backend.register(name, lambda ip_version: BlockingConn())
    request = OpenConnection(backend=name, ip_version=IPVersion.IPV4).encode()
    stdin, stdout, out_bytes = _fake_stdio(request)
    with mock.patch.object(sys, "platform", "freebsd14"), \
            mock.patch.object(sys, "stdin", stdin), mock.patch.object(sys, "stdout", stdout):
        with pytest.raises(SystemExit) as exc:
            initialize(["vasily", START_PRIV_FLAG])
    assert exc.value.code == 0
    assert out_bytes.getvalue() == OpenConnectionReply(id=0).encode()


def test_initialize_privileged_malformed_input():
    stdin, stdout, _ = _fake_stdio(bytes([0, 1, 0]))
    with mock.patch.object(sys, "platform", "freebsd14"), \
            mock.patch.object(sys, "stdin", stdin), mock.patch.object(sys, "stdout", stdout):
        with pytest.raises(SystemExit) as exc:
            initialize(["vasily", START_PRIV_FLAG])
    assert exc.value.code == 1


def test_initialize_without_privsep_keeps_direct_backends():
    name = f"fake-direct:{next(_counter)}"
    conn = BlockingConn()
    backend.register(name, lambda ip_version: conn)
    ids = FakeIds(1000, 1000)
    with mock.patch.object(sys, "platform", "linux"), ids.patch():
        cleanup = initialize(["vasily", "example.com"])
    assert cleanup() is None
    assert backend.new(name, IPVersion.IPV4) is conn
    assert ids.calls == []