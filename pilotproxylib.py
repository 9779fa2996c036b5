"""
pilot proxy library. Verifies that a payload proxy was delegated by the
pilot proxy (X509_USER_PROXY) of a pilot job, classifies the payload proxy
and hands its DN and FQANs over to the host authorization framework.
"""
# Copyright (c) 2012, SWITCH - Serving Swiss Universities
# All rights reserved.
# 
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#     * Redistributions of source code must retain the above copyright
#       notice, this list of conditions and the following disclaimer.
#     * Redistributions in binary form must reproduce the above copyright
#       notice, this list of conditions and the following disclaimer in the
#       documentation and/or other materials provided with the distribution.
#     * Neither the name of the SWITCH nor the
#       names of its contributors may be used to endorse or promote products
#       derived from this software without specific prior written permission.
# 
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS" AND
# ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED
# WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
# DISCLAIMED. IN NO EVENT SHALL <COPYRIGHT HOLDER> BE LIABLE FOR ANY
# DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES
# (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES;
# LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND
# ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT
# (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
# SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.




__version__ = "0.3.0"

import os
import re
import string
import logging
from collections import namedtuple

from M2Crypto import X509, EVP
from pyasn1.type import univ, namedtype
from pyasn1.codec.der import decoder as der_decoder
from pyasn1.error import PyAsn1Error
from pyasn1_modules import rfc5280

from proxyerrors import PilotProxyConfigError, PilotProxyInputError, \
        ProxyParseError, TrustError, \
        FQANMismatchError, CredentialError
from fileutil import read_proxy, LCK_NOLOCK, LCK_FCNTL, LCK_FLOCK
from utils import certs_from_string

log = logging.getLogger(__name__)

# http://dev.globus.org/wiki/Security/ProxyCertTypes  -> FOR OIDs
OID_RFC_PROXY = '1.3.6.1.5.5.7.1.14'            # RFC3820 proxyCertInfo
OID_LIMITED_PROXY = '1.3.6.1.4.1.3536.1.1.1.9'  # limited proxy policy language

# lock types as passed by the caller
LOCK_NOLOCK = 0
LOCK_FCNTL = 1
LOCK_FLOCK = 2


Extension = namedtuple('Extension', 'oid critical value')
ProxyPolicy = namedtuple('ProxyPolicy', 'path_length language policy')
ProxyClassification = namedtuple('ProxyClassification', 'is_rfc is_limited')
Decision = namedtuple('Decision', 'subject classification fqans')


class ProxyPolicyASN1(univ.Sequence):
    """ ProxyPolicy ::= SEQUENCE {
            policyLanguage  OBJECT IDENTIFIER,
            policy          OCTET STRING OPTIONAL }
    """
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('policyLanguage', univ.ObjectIdentifier()),
        namedtype.OptionalNamedType('policy', univ.OctetString()))

class ProxyCertInfoASN1(univ.Sequence):
    """ ProxyCertInfoExtension ::= SEQUENCE {
            pCPathLenConstraint  INTEGER (0..MAX) OPTIONAL,
            proxyPolicy          ProxyPolicy }
        (RFC 3820, section 3.8)
    """
    componentType = namedtype.NamedTypes(
        namedtype.OptionalNamedType('pCPathLenConstraint', univ.Integer()),
        namedtype.NamedType('proxyPolicy', ProxyPolicyASN1()))


def _oneline(name):
    """ X509_Name in one-line format. Some M2Crypto versions give bytes. """
    value = name.__str__()
    if isinstance(value, bytes):
        return value.decode('utf-8', 'replace')
    return value

def _decode_extensions(der):
    """ Returns tuple of Extension, in order of the certificate. 
        A certificate we can't decode has no extensions for us.
    """
    try:
        cert, _ = der_decoder.decode(der, asn1Spec=rfc5280.Certificate())
    except PyAsn1Error as err:
        log.warning("_decode_extensions: cannot decode certificate: %s", err)
        return ()

    extensions = cert['tbsCertificate']['extensions']
    if not extensions.isValue:
        return ()
    return tuple(Extension(str(ext['extnID']), bool(ext['critical']),
                           ext['extnValue'].asOctets())
                 for ext in extensions)


class ProxyCertificate(object):
    """ Read-only view of a X509 certificate (M2Crypto X509 instance). """

    def __init__(self, x509):
        """
        x509 -- M2Crypto X509 instance

        raises PilotProxyInputError -- if x509 is None
        """
        if x509 is None:
            raise PilotProxyInputError("Missing certificate",
                "Cannot create a ProxyCertificate from None")
        self._x509 = x509
        self._extensions = _decode_extensions(x509.as_der())

    @property
    def x509(self):
        return self._x509

    @property
    def subject(self):
        """ Subject DN in one-line format, e.g. /C=CH/O=SWITCH/CN=proxy """
        return _oneline(self._x509.get_subject())

    @property
    def issuer(self):
        return _oneline(self._x509.get_issuer())

    @property
    def extensions(self):
        return self._extensions

    def get_extension(self, oid):
        """ Returns first Extension with given (dotted) oid or None """
        for ext in self._extensions:
            if ext.oid == oid:
                return ext
        return None

    def get_pubkey(self):
        """ Returns EVP.PKey instance """
        return self._x509.get_pubkey()

    def verify(self, pkey):
        """ Returns 1 if this certificate was signed with private key 
            belonging to pkey.
        """
        return self._x509.verify(pkey)

    def as_pem(self):
        return self._x509.as_pem()

    def as_der(self):
        return self._x509.as_der()

    def __repr__(self):
        return '<ProxyCertificate %s>' % self.subject


class CertificateChain(object):
    """ 
    Ordered list of ProxyCertificates, leaf (i.e. the proxy itself) first.
    The chain knows whether we created it (OWNED) or got it from the 
    host framework (BORROWED), only owned chains get released.
    """

    OWNED = 'owned'
    BORROWED = 'borrowed'

    def __init__(self, certs, ownership=OWNED):
        """
        certs -- list of ProxyCertificate or M2Crypto X509 instances
        ownership -- OWNED or BORROWED 

        raises: ProxyParseError -- for an empty list of certificates
                PilotProxyInputError -- for unknown ownership
        """
        if ownership not in (CertificateChain.OWNED, CertificateChain.BORROWED):
            raise PilotProxyInputError("Invalid ownership",
                "Unknown chain ownership '%s'" % ownership)
        self._ownership = ownership
        self._certs = tuple(c if isinstance(c, ProxyCertificate) 
                            else ProxyCertificate(c) for c in certs)
        if not self._certs:
            raise ProxyParseError("Empty chain", 
                "Certificate chain contains no certificates")

    @property
    def ownership(self):
        return self._ownership

    @property
    def leaf(self):
        """ The first certificate of the chain. """
        return self._certs[0]

    def release(self):
        """ Drops the certificates of an owned chain. A borrowed chain
            belongs to the host framework and is left alone.
            returns -- True if released
        """
        if self._ownership != CertificateChain.OWNED:
            return False
        self._certs = ()
        return True

    def __len__(self):
        return len(self._certs)

    def __iter__(self):
        return iter(self._certs)

    def __getitem__(self, index):
        return self._certs[index]


def pem_string_to_x509_chain(pem):
    """ 
    Converts PEM string to an (owned) CertificateChain.
    
    raises ProxyParseError -- if pem is empty or contains no certificates 
    """
    return CertificateChain(certs_from_string(pem), CertificateChain.OWNED)


def proxy_is_rfc(cert):
    """ Returns True if cert has a RFC3820 proxyCertInfo extension 
        (critical or not), False otherwise.
    """
    for ext in cert.extensions:
        if ext.oid == OID_RFC_PROXY:
            return True
    return False

def decode_proxy_policy(cert):
    """ 
    Decodes the proxyCertInfo extension of cert.
    
    returns -- ProxyPolicy, or None if the extension is missing or 
               can't be decoded.
    """
    ext = cert.get_extension(OID_RFC_PROXY)
    if ext is None:
        return None
    try:
        pci, _ = der_decoder.decode(ext.value, asn1Spec=ProxyCertInfoASN1())
        policy = pci['proxyPolicy']
        language = str(policy['policyLanguage'])
    except PyAsn1Error as err:
        log.debug("decode_proxy_policy: cannot decode proxyCertInfo of %s: %s",
            cert.subject, err)
        return None

    path_length = None
    if pci['pCPathLenConstraint'].isValue:
        path_length = int(pci['pCPathLenConstraint'])
    policy_data = None
    if policy['policy'].isValue:
        policy_data = policy['policy'].asOctets()
    log.debug("decode_proxy_policy: found policy language %s", language)
    return ProxyPolicy(path_length, language, policy_data)

def proxy_is_limited(cert):
    """ Returns True if cert is a RFC3820 limited proxy. Notice, a missing 
        or undecodable proxyCertInfo gives False as well.
    """
    policy = decode_proxy_policy(cert)
    return policy is not None and policy.language == OID_LIMITED_PROXY

def classify_proxy(cert):
    """ Returns ProxyClassification of cert """
    return ProxyClassification(proxy_is_rfc(cert), proxy_is_limited(cert))


class TrustVerdict(object):
    """ Outcome of verify_proxy_signature() """
    VERIFIED = 'verified'
    SIGNATURE_MISMATCH = 'signature mismatch'
    MISSING_KEY = 'missing key'
    MISSING_INPUT = 'missing input'


def verify_proxy_signature(payload, pilot):
    """ 
    Verifies that payload was signed by (the key of) pilot. Only this one
    step is checked, the trust of the pilot itself is not.

    payload, pilot -- ProxyCertificate or M2Crypto X509 instances

    returns -- one of the TrustVerdict values
    """
    if payload is None or pilot is None:
        log.warning("verify_proxy_signature: pilot or payload proxy is unset")
        return TrustVerdict.MISSING_INPUT

    try:
        pilot_key = pilot.get_pubkey()
    except (X509.X509Error, EVP.EVPError) as err:
        pilot_key = None
        log.debug("verify_proxy_signature: %s", err)
    if pilot_key is None:
        log.warning("verify_proxy_signature: cannot get public key from "
            "pilot cert")
        return TrustVerdict.MISSING_KEY

    try:
        result = payload.verify(pilot_key)
    except (X509.X509Error, EVP.EVPError) as err:
        log.debug("verify_proxy_signature: %s", err)
        result = 0
    if result != 1:
        log.warning("verify_proxy_signature: payload cert is not signed by "
            "pilot cert")
        return TrustVerdict.SIGNATURE_MISMATCH

    return TrustVerdict.VERIFIED


# POSIX character classes of the C locale
_CHAR_CLASSES = {
    'alpha': 'a-zA-Z',
    'digit': '0-9',
    'alnum': 'a-zA-Z0-9',
    'upper': 'A-Z',
    'lower': 'a-z',
    'xdigit': '0-9A-Fa-f',
    'space': ' \\t\\n\\r\\v\\f',
    'blank': ' \\t',
    'punct': ''.join(re.escape(c) for c in string.punctuation),
    'cntrl': '\\x00-\\x1f\\x7f',
    'print': '\\x20-\\x7e',
    'graph': '\\x21-\\x7e',
}

def _translate_bracket(pattern, i):
    """
    Translates the bracket expression starting after the '[' at
    position i. '!' and '^' both negate, ']' right after the opening
    (or the negation) is literal and [:class:] names a POSIX class.

    returns -- (regex, position after the closing ']') or None
               when the bracket is not closed
    raises ValueError for an unknown character class
    """
    n = len(pattern)
    negate = i < n and pattern[i] in '!^'
    if negate:
        i += 1
    items = []
    first = True
    while i < n:
        c = pattern[i]
        if c == ']' and not first:
            body = ''.join(items)
            if not body:
                # only empty ranges
                return ('.' if negate else '(?!)'), i + 1
            return '[%s%s]' % ('^' if negate else '', body), i + 1
        first = False
        if pattern.startswith('[:', i):
            end = pattern.find(':]', i + 2)
            if end != -1:
                name = pattern[i + 2:end]
                if name not in _CHAR_CLASSES:
                    raise ValueError("unknown character class '%s'" % name)
                items.append(_CHAR_CLASSES[name])
                i = end + 2
                continue
        if i + 2 < n and pattern[i + 1] == '-' and pattern[i + 2] != ']':
            lo, hi = c, pattern[i + 2]
            if lo <= hi:
                items.append('%s-%s' % (re.escape(lo), re.escape(hi)))
            i += 3
            continue
        items.append(re.escape(c))
        i += 1
    return None

def _compile_fqan_pattern(pattern):
    """
    Compiles a shell pattern the way fnmatch(3) with FNM_NOESCAPE reads
    it: '*' and '?' match any character including '/', a backslash is an
    ordinary character and an unclosed '[' matches itself.
    """
    res = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == '*':
            if not res or res[-1] != '.*':
                res.append('.*')
        elif c == '?':
            res.append('.')
        elif c == '[':
            bracket = _translate_bracket(pattern, i)
            if bracket is None:
                res.append(re.escape(c))
            else:
                res.append(bracket[0])
                i = bracket[1]
        else:
            res.append(re.escape(c))
    return re.compile(''.join(res), re.DOTALL)

def match_fqan(fqans, pattern):
    """
    Checks whether one of the FQANs matches the shell pattern
    (*, ?, [...], [!...], [^...], [[:class:]]). Matching is case
    sensitive, a backslash is an ordinary character. A pattern with
    an unknown character class matches nothing.

    returns -- True when found, False otherwise
    """
    try:
        regex = _compile_fqan_pattern(pattern)
    except ValueError as e:
        log.warning("match_fqan: invalid pattern %s: %s", pattern, e)
        return False
    for fqan in fqans:
        if regex.fullmatch(fqan):
            log.debug("match_fqan: found FQAN matching %s: %s", pattern, fqan)
            return True
    return False


class CredentialStore(object):
    """ 
    In-memory credential data of the host framework: the DN of 
    the payload and its FQANs (VO credential strings).
    """

    DN = 'DN'
    VO_CRED_STRING = 'VO_CRED_STRING'

    def __init__(self):
        self._dn = None
        self._vo_cred_strings = list()

    def add_credential_data(self, kind, value):
        """ 
        kind -- CredentialStore.DN or CredentialStore.VO_CRED_STRING
        value -- string

        raises CredentialError -- for unknown kind or missing value
        """
        if value is None:
            raise CredentialError("Missing value",
                "No value given for credential data '%s'" % kind)
        if kind == CredentialStore.DN:
            self._dn = value
        elif kind == CredentialStore.VO_CRED_STRING:
            self._vo_cred_strings.append(value)
        else:
            raise CredentialError("Invalid kind",
                "Unknown credential data type '%s'" % kind)

    def get_dn(self):
        return self._dn

    def get_vo_cred_strings(self):
        return list(self._vo_cred_strings)


class PilotSubProxy(object):
    """
    Checks a payload proxy against the proxy of the pilot job it runs
    under: the payload proxy must be signed by the pilot proxy 
    (found via X509_USER_PROXY).

    arguments -- host framework arguments, a mapping with keys
        px509_chain -- payload chain (CertificateChain or list of certs)
        pem_string -- payload chain as PEM string, used if px509_chain unset
        nfqan -- number of FQANs
        fqan_list -- list of FQANs
    store -- credential data sink, needs a add_credential_data(kind, value) 
             method (default a CredentialStore)
    """

    ENV_USER_PROXY = 'X509_USER_PROXY'

    LOCK_FLAGS = {
        LOCK_NOLOCK: LCK_NOLOCK,
        LOCK_FCNTL: LCK_FCNTL,
        LOCK_FLOCK: LCK_FLOCK,
    }

    def __init__(self, arguments=None, store=None, lock_type=LOCK_NOLOCK):
        if arguments is None:
            arguments = dict()
        if store is None:
            store = CredentialStore()
        self._arguments = arguments
        self._store = store
        self.set_lock_type(lock_type)

    def set_lock_type(self, lock_type):
        """ Sets lock type for reading the pilot proxy: LOCK_NOLOCK,
            LOCK_FCNTL or LOCK_FLOCK.

            raises PilotProxyInputError for any other value
        """
        if isinstance(lock_type, bool) or \
                lock_type not in PilotSubProxy.LOCK_FLAGS:
            log.error("set_lock_type: unknown lock_type %r", lock_type)
            raise PilotProxyInputError("Invalid lock_type",
                "The specified lock_type '%r' is not supported." % lock_type)
        self._lock_type = lock_type

    def get_lock_type(self):
        return self._lock_type

    def get_store(self):
        return self._store

    def get_pilot_proxy(self):
        """
        Reads the pilot proxy chain from the file X509_USER_PROXY points to.

        returns -- owned CertificateChain
        raises: PilotProxyConfigError -- if X509_USER_PROXY is unset
                ProxyParseError -- if the file contains no certificates
                see fileutil.read_proxy() for the file errors
        """
        proxy = os.environ.get(PilotSubProxy.ENV_USER_PROXY)
        if proxy is None:
            log.warning("get_pilot_proxy: environment variable %s unset",
                PilotSubProxy.ENV_USER_PROXY)
            raise PilotProxyConfigError("Missing %s" % PilotSubProxy.ENV_USER_PROXY,
                "Environment variable %s is unset" % PilotSubProxy.ENV_USER_PROXY)

        pem = read_proxy(proxy, PilotSubProxy.LOCK_FLAGS[self._lock_type])
        try:
            return pem_string_to_x509_chain(pem)
        except ProxyParseError:
            log.warning("get_pilot_proxy: cannot convert pemstring to chain")
            raise

    def get_payload_proxy(self):
        """
        Gets the payload chain from the host framework arguments, either
        as chain (borrowed) or as PEM string (converted, owned).

        returns -- CertificateChain
        raises: PilotProxyConfigError -- if neither chain nor PEM string is set
                ProxyParseError -- if the PEM string can't be converted
        """
        chain = self._arguments.get('px509_chain')
        if chain:
            return CertificateChain(chain, CertificateChain.BORROWED)

        log.debug("get_payload_proxy: no X.509 chain is set, trying pem string")
        pem = self._arguments.get('pem_string')
        if pem is None:
            log.warning("get_payload_proxy: no chain or pemstring is set")
            raise PilotProxyConfigError("Missing payload",
                "Neither px509_chain nor pem_string is set")
        try:
            return pem_string_to_x509_chain(pem)
        except ProxyParseError:
            log.warning("get_payload_proxy: cannot convert pemstring to chain")
            raise

    def get_fqans(self):
        """ 
        Gets the FQANs from the host framework arguments. Missing FQANs are 
        not an error.

        returns -- tuple of FQAN strings (may be empty)
        """
        nfqan = self._arguments.get('nfqan')
        if nfqan is None:
            log.info("get_fqans: No VOMS AC(s) found by the framework in the "
                "proxy chain")
            return ()

        try:
            nfqan = int(nfqan)
        except (TypeError, ValueError):
            log.error("get_fqans: invalid nfqan %r", nfqan)
            raise PilotProxyInputError("Invalid nfqan",
                "Number of FQANs '%r' is not an integer." % (nfqan,))
        log.debug("get_fqans: found nfqan: %d", nfqan)
        if nfqan <= 0:
            log.info("get_fqans: No VOMS FQANs present in the proxy chain")
            return ()

        fqans = self._arguments.get('fqan_list')
        if fqans is None:
            log.warning("get_fqans: nfqan is %d but no list of FQANs is set",
                nfqan)
            return ()
        log.debug("get_fqans: found list of FQANs")
        return tuple(fqans[:nfqan])

    def verify_trust(self, payload_chain, pilot_chain):
        """ 
        Verifies the leaf of payload_chain is signed by the leaf of 
        pilot_chain.

        raises: PilotProxyInputError -- if a chain is missing
                TrustError -- if the signature can't be verified
        """
        payload = payload_chain.leaf if payload_chain else None
        pilot = pilot_chain.leaf if pilot_chain else None
        verdict = verify_proxy_signature(payload, pilot)
        if verdict == TrustVerdict.MISSING_INPUT:
            raise PilotProxyInputError("Missing proxy",
                "Pilot or payload proxy is unset")
        if verdict != TrustVerdict.VERIFIED:
            raise TrustError("Payload not signed by pilot",
                "Payload proxy '%s' is not signed by pilot proxy '%s': %s" % \
                (payload.subject, pilot.subject, verdict), verdict)
        return verdict

    def classify(self, cert):
        """ Returns ProxyClassification of cert """
        return classify_proxy(cert)

    def match_fqan(self, fqans, pattern):
        return match_fqan(fqans, pattern)

    def store_proxy_dn(self, payload):
        """ 
        Stores the subject DN of payload certificate as DN in the 
        credential data.

        raises CredentialError -- if the DN can't be obtained or stored
        """
        dn = payload.subject if payload is not None else None
        if not dn:
            log.warning("store_proxy_dn: cannot obtain DN of payload certificate")
            raise CredentialError("Missing DN", 
                "Cannot obtain DN of payload certificate")
        try:
            self._store.add_credential_data(CredentialStore.DN, dn)
        except CredentialError:
            log.warning('store_proxy_dn: failed to add DN "%s" to credential '
                'data', dn)
            raise
        log.debug('store_proxy_dn: successfully added DN "%s" to credential '
            'data', dn)

    def store_fqans(self, fqans):
        """ 
        Stores FQANs as VO credential strings. Stops at the first failure.

        raises CredentialError -- if an FQAN can't be stored
        """
        for fqan in fqans:
            try:
                self._store.add_credential_data(CredentialStore.VO_CRED_STRING,
                    fqan)
            except CredentialError:
                log.warning('store_fqans: failed to add FQAN "%s" to '
                    'credential data', fqan)
                raise
        log.debug("store_fqans: successfully added %d FQANs to credential data",
            len(fqans))

    def cleanup_chains(self, pilot, payload):
        """ Releases pilot and, if owned by us, payload chain. """
        if pilot is not None:
            pilot.release()
        if payload is not None:
            payload.release()

    def run(self, pattern=None):
        """
        Runs a complete check: gets pilot and payload proxy, verifies the
        payload is signed by the pilot, classifies the payload proxy, checks
        FQANs against pattern (if given) and stores DN and FQANs.

        returns -- Decision (subject, classification, fqans)
        raises -- PilotProxyError, CredentialError
        """
        pilot = payload = None
        try:
            pilot = self.get_pilot_proxy()
            payload = self.get_payload_proxy()
            self.verify_trust(payload, pilot)

            leaf = payload.leaf
            classification = self.classify(leaf)
            fqans = self.get_fqans()
            if pattern is not None and not self.match_fqan(fqans, pattern):
                log.warning("run: no FQAN matches %s", pattern)
                raise FQANMismatchError("FQAN mismatch",
                    "None of the FQANs %s matches '%s'" % (list(fqans), pattern))

            self.store_proxy_dn(leaf)
            self.store_fqans(fqans)
            return Decision(leaf.subject, classification, fqans)
        finally:
            self.cleanup_chains(pilot, payload)
