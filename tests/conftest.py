""" Fixtures for the pilot proxy tests: on the fly generated user, 
    pilot and payload proxy credentials and a fake process identity. 
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


import os
import time
import errno
import random

import pytest
from M2Crypto import RSA, X509, EVP, ASN1, util

import fileutil

KEY_USAGE_VALUE = "critical,digitalSignature, keyEncipherment"
PCI_NORMAL_POLICY = "critical, language:1.3.6.1.5.5.7.21.1"
PCI_LIMITED_POLICY = "critical, language:1.3.6.1.4.1.3536.1.1.1.9"


class Credential(object):
    """ Key, certificate and issuing chain of a test credential. """

    def __init__(self, entries, cert, key, chain=()):
        self.entries = list(entries)  # (field, value) pairs of the subject
        self.cert = cert
        self.key = key
        self.chain = list(chain)      # issuers of cert, excluding cert

    def certs(self):
        return [self.cert] + self.chain

    def as_pem(self, with_key=True):
        """ Proxy file layout: cert, key, then the chain """
        pem = self.cert.as_pem()
        if with_key:
            pem += self.key.as_pem(cipher=None)
        for crt in self.chain:
            pem += crt.as_pem()
        return pem


def gen_key(bits=2048):
    pkey = EVP.PKey()
    pkey.assign_rsa(RSA.gen_key(bits, 65537, callback=util.quiet_genparam_callback))
    return pkey

def make_name(entries):
    name = X509.X509_Name()
    for field, entry in entries:
        name.add_entry_by_txt(field=field, type=ASN1.MBSTRING_ASC,
                              entry=entry, len=-1, loc=-1, set=0)
    return name

def make_cert(entries, issuer, pkey, signing_key, extensions=(), serial=1):
    """ issuer -- Credential or None for a self signed certificate """
    cert = X509.X509()
    cert.set_version(2)
    cert.set_serial_number(serial)
    not_before = ASN1.ASN1_TIME()
    not_before.set_time(int(time.time()) - 300)
    not_after = ASN1.ASN1_TIME()
    not_after.set_time(int(time.time()) + 43200)
    cert.set_not_before(not_before)
    cert.set_not_after(not_after)
    subject = make_name(entries)
    cert.set_subject_name(subject)
    if issuer is None:
        cert.set_issuer_name(subject)
    else:
        cert.set_issuer_name(issuer.cert.get_subject())
    cert.set_pubkey(pkey)
    for ext in extensions:
        cert.add_ext(ext)
    cert.sign(signing_key, 'sha256')
    return cert

def new_user(cn, org='SWITCH'):
    entries = [('C', 'CH'), ('O', org), ('CN', cn)]
    key = gen_key()
    cert = make_cert(entries, None, key, key, serial=random.randint(1, 1 << 30))
    return Credential(entries, cert, key)

def delegate(issuer, px_type='rfc', px_policy='normal', extensions=(), 
             pci_critical=1):
    """ 
    Creates a proxy of issuer. 

    px_type -- 'rfc' (RFC3820) or 'old' (legacy globus proxy, no proxyCertInfo)
    px_policy -- 'normal' or 'limited'
    extensions -- additional X509_Extension instances
    """
    exts = [X509.new_extension("keyUsage", KEY_USAGE_VALUE, 1)]
    if px_type == 'old':
        if px_policy == 'limited':
            proxy_subject = 'limited proxy'
        else:
            proxy_subject = 'proxy'
    else:
        proxy_subject = str(random.randint(10000000, 99999999))
        if px_policy == 'limited':
            policy = PCI_LIMITED_POLICY
        else:
            policy = PCI_NORMAL_POLICY
        if not pci_critical:
            policy = policy.replace("critical, ", "")
        exts.append(X509.new_extension("proxyCertInfo", policy, pci_critical))
    exts.extend(extensions)

    entries = issuer.entries + [('CN', proxy_subject)]
    key = gen_key()
    cert = make_cert(entries, issuer, key, issuer.key, exts,
                     serial=random.randint(1, 1 << 30))
    return Credential(entries, cert, key, issuer.certs())


class FakeIdentity(object):
    """ Real/effective/saved uid and gid of a process, with the POSIX 
        rules for seteuid()/setegid() of an unprivileged process.
    """

    def __init__(self, uid, euid, gid, egid):
        self.uid, self.euid, self.suid = uid, euid, euid
        self.gid, self.egid, self.sgid = gid, egid, egid
        self.calls = []
        self.fail = set()

    def getuid(self):
        return self.uid

    def geteuid(self):
        return self.euid

    def getgid(self):
        return self.gid

    def getegid(self):
        return self.egid

    def _deny(self, call):
        raise OSError(errno.EPERM, os.strerror(errno.EPERM), call)

    def seteuid(self, euid):
        self.calls.append(('seteuid', euid))
        if 'seteuid' in self.fail or \
                (self.euid != 0 and euid not in (self.uid, self.suid)):
            self._deny('seteuid')
        self.euid = euid

    def setegid(self, egid):
        self.calls.append(('setegid', egid))
        if 'setegid' in self.fail or \
                (self.euid != 0 and egid not in (self.gid, self.sgid)):
            self._deny('setegid')
        self.egid = egid

    def install(self, monkeypatch):
        for name in ('getuid', 'geteuid', 'getgid', 'getegid', 
                     'seteuid', 'setegid'):
            monkeypatch.setattr(fileutil.os, name, getattr(self, name))
        return self


@pytest.fixture
def fake_identity(monkeypatch):
    """ Returns factory installing a FakeIdentity(uid, euid, gid, egid) """
    def factory(uid, euid, gid, egid):
        return FakeIdentity(uid, euid, gid, egid).install(monkeypatch)
    return factory


@pytest.fixture(scope="session")
def user():
    return new_user('Pilot Owner')

@pytest.fixture(scope="session")
def other_user():
    return new_user('Somebody Else', org='Elsewhere')

@pytest.fixture(scope="session")
def pilot(user):
    return delegate(user)

@pytest.fixture(scope="session")
def payload(pilot):
    return delegate(pilot)

@pytest.fixture(scope="session")
def limited_payload(pilot):
    return delegate(pilot, px_policy='limited')

@pytest.fixture(scope="session")
def legacy_payload(pilot):
    return delegate(pilot, px_type='old')

@pytest.fixture(scope="session")
def stranger_payload(other_user):
    return delegate(delegate(other_user))


def write_proxy(path, data, mode=0o600):
    with open(path, 'wb') as f:
        f.write(data)
    os.chmod(path, mode)
    return str(path)

@pytest.fixture
def pilot_file(tmp_path, pilot, monkeypatch):
    """ Pilot proxy stored in a file X509_USER_PROXY points to """
    path = write_proxy(tmp_path / 'x509up_pilot', pilot.as_pem())
    monkeypatch.setenv('X509_USER_PROXY', path)
    return path
