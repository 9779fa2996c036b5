""" Tests for converting PEM data into certificate chains """

import pytest

from utils import certs_from_string, certs_from_file
from pilotproxylib import CertificateChain, ProxyCertificate, \
        pem_string_to_x509_chain
from proxyerrors import ProxyParseError, PilotProxyInputError

BROKEN = b"-----BEGIN CERTIFICATE-----\nTm90IGEgY2VydGlmaWNhdGU=\n" \
         b"-----END CERTIFICATE-----\n"


def subjects(certs):
    return [str(c.get_subject()) for c in certs]


class TestCertsFromString(object):

    def test_order_is_preserved(self, payload):
        certs = certs_from_string(payload.as_pem(with_key=False))
        assert len(certs) == 3
        assert subjects(certs) == subjects(payload.certs())

    def test_key_is_skipped(self, payload):
        certs = certs_from_string(payload.as_pem())
        assert subjects(certs) == subjects(payload.certs())

    def test_str_input(self, pilot):
        certs = certs_from_string(pilot.as_pem().decode('ascii'))
        assert subjects(certs) == subjects(pilot.certs())

    def test_broken_block_is_skipped(self, user, pilot):
        pem = pilot.cert.as_pem() + BROKEN + user.cert.as_pem()
        certs = certs_from_string(pem)
        assert subjects(certs) == subjects([pilot.cert, user.cert])

    @pytest.mark.parametrize("pem", [None, b'', '', b'garbage\n', BROKEN,
        b'-----BEGIN CERTIFICATE-----\n'])
    def test_no_certificates(self, pem):
        with pytest.raises(ProxyParseError):
            certs_from_string(pem)

    def test_from_file(self, tmp_path, payload):
        path = tmp_path / 'payload.pem'
        path.write_bytes(payload.as_pem())
        assert subjects(certs_from_file(str(path))) == \
            subjects(payload.certs())


class TestCertificateChain(object):

    def test_pem_chain_is_owned(self, payload):
        chain = pem_string_to_x509_chain(payload.as_pem())
        assert chain.ownership == CertificateChain.OWNED
        assert len(chain) == 3
        assert chain.leaf.subject == str(payload.cert.get_subject())
        assert [c.subject for c in chain] == subjects(payload.certs())
        assert chain[-1].subject == chain[-1].issuer

    def test_chain_survives_source(self, pilot):
        pem = bytearray(pilot.as_pem())
        chain = pem_string_to_x509_chain(bytes(pem))
        del pem[:]
        assert chain.leaf.subject == str(pilot.cert.get_subject())

    def test_empty_chain(self):
        with pytest.raises(ProxyParseError):
            CertificateChain([])

    def test_invalid_ownership(self, pilot):
        with pytest.raises(PilotProxyInputError):
            CertificateChain(pilot.certs(), 'stolen')

    def test_wraps_x509(self, pilot):
        chain = CertificateChain(pilot.certs(), CertificateChain.BORROWED)
        assert all(isinstance(c, ProxyCertificate) for c in chain)
        assert chain.leaf.x509 is pilot.cert

    def test_release(self, pilot):
        owned = CertificateChain(pilot.certs())
        borrowed = CertificateChain(pilot.certs(), CertificateChain.BORROWED)
        assert owned.release()
        assert len(owned) == 0
        assert not borrowed.release()
        assert len(borrowed) == 2

    def test_certificate_needs_x509(self):
        with pytest.raises(PilotProxyInputError):
            ProxyCertificate(None)
