"""A TCP mux spread over several listening ports."""

from __future__ import annotations

from icemux.errors import NoTCPMuxAvailableError


class MultiTCPMuxDefault:
    """Uses several TCP muxes together, one connection per mux for a ufrag."""

    def __init__(self, *muxes):
        self._muxes = list(muxes)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def muxes(self) -> list:
        return list(self._muxes)

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local_ip):
        """Return the connection from the first mux, keeping existing connections in use."""
        if not self._muxes:
            raise NoTCPMuxAvailableError()
        return self._muxes[0].get_conn_by_ufrag(ufrag, is_ipv6, local_ip)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Remove the connections for ``ufrag`` from every mux."""
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def get_all_conns(self, ufrag: str, is_ipv6: bool, local_ip) -> list:
        """Return one connection from each mux; any failure fails the whole call."""
        if not self._muxes:
            raise NoTCPMuxAvailableError()
        conns = []
        for mux in self._muxes:
            conn = mux.get_conn_by_ufrag(ufrag, is_ipv6, local_ip)
            if conn is not None:
                conns.append(conn)
        return conns

    def close(self) -> None:
        """Close every mux; the last error raised by one of them is re-raised."""
        error = None
        for mux in self._muxes:
            try:
                mux.close()
            except Exception as err:
                error = err
        if error is not None:
            raise error