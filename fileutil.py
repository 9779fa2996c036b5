"""
File utilities for credential files that are read by privileged processes:
dropping and raising the effective uid/gid, advisory file locking and
reading a proxy file which might get rewritten (e.g. by proxy renewal)
while we are reading it.
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
import stat
import time
import fcntl
import logging
from collections import namedtuple

from proxyerrors import PilotProxyInputError, PrivilegeError, ProxyIOError, \
        ProxyLockError, ProxyPermissionError, ProxyMemoryError, \
        TooManyRetriesError

log = logging.getLogger(__name__)

# lock types, can be or-ed, except for LCK_NOLOCK
LCK_NOLOCK = 1 << 0     # no locking
LCK_FCNTL = 1 << 1      # fcntl() (range) locking
LCK_FLOCK = 1 << 2      # flock() (whole file) locking
LCK_BOTH = LCK_FCNTL | LCK_FLOCK

# lock actions
LCK_READ = 1 << 0       # set shared read lock
LCK_WRITE = 1 << 1      # set exclusive write lock
LCK_UNLOCK = 1 << 2     # unset lock

_LOCK_OPS = {
    LCK_READ: fcntl.LOCK_SH,
    LCK_WRITE: fcntl.LOCK_EX,
    LCK_UNLOCK: fcntl.LOCK_UN,
}

READ_TRIES = 10         # max number of reads of a changing file
RETRY_DELAY = 0.0005    # [sec] wait between two reads

# nobody but the owner may read or write a proxy
UNSAFE_MODE_BITS = stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH


class PrivilegeSnapshot(namedtuple('PrivilegeSnapshot', 'uid euid gid egid')):
    """ Real and effective uid/gid of the process, taken right 
        before dropping privilege and used for raising it again.
    """
    __slots__ = ()

    @classmethod
    def current(cls):
        return cls(os.getuid(), os.geteuid(), os.getgid(), os.getegid())

    @property
    def needs_drop(self):
        """ True when running effectively as root on behalf of 
            a non-root real user. 
        """
        return self.euid == 0 and self.uid != 0


def priv_drop(unpriv_uid, unpriv_gid):
    """ 
    Drops privilege to an unprivileged account. Can be raised again 
    using raise_priv(). The effective gid is set first, since we can't
    change it anymore once the effective uid is not root.

    unpriv_uid -- uid to drop to. A uid of 0 is never set.
    unpriv_gid -- gid to drop to (may be 0, the root group)

    raises PrivilegeError -- if setegid() or seteuid() fails. When 
            seteuid() fails, the original egid is restored.
    """
    euid = os.geteuid()
    egid = os.getegid()

    if unpriv_gid != egid:
        try:
            os.setegid(unpriv_gid)
        except OSError as err:
            raise PrivilegeError("setegid",
                "cannot set effective gid to %d: %s" % (unpriv_gid, err.strerror),
                err.errno)

    if unpriv_uid == 0 or unpriv_uid == euid:
        return

    try:
        os.seteuid(unpriv_uid)
    except OSError as err:
        if unpriv_gid != egid:
            # damage control, the seteuid() failure is what we report
            try:
                os.setegid(egid)
            except OSError as err2:
                log.warning("priv_drop: cannot restore effective gid %d: %s",
                    egid, err2.strerror)
        raise PrivilegeError("seteuid",
            "cannot set effective uid to %d: %s" % (unpriv_uid, err.strerror),
            err.errno)


def raise_priv(euid, egid):
    """
    Tries to raise privilege back to euid/egid after priv_drop().

    Notice, this only works when either the saved euid or the real uid is 
    root. Otherwise raising is impossible, which is the normal situation 
    for non-privileged invocations.

    returns -- True on success, False when failed or impossible.
    """
    try:
        if euid == 0:
            # target euid is root: do euid first
            os.seteuid(euid)
            os.setegid(egid)
            return True
        if os.getuid() == 0:
            # root running setuid-nonroot: need euid 0 for the setegid
            os.seteuid(0)
            os.setegid(egid)
            os.seteuid(euid)
            return True
    except OSError as err:
        log.warning("raise_priv: cannot raise privilege to euid %d, egid %d: %s",
            euid, egid, err.strerror)
        return False

    log.debug("raise_priv: neither euid nor real uid is root, cannot raise privilege")
    return False


def filelock(fd, lock_type, action):
    """
    Sets or unsets advisory lock(s) on the file given by filedescriptor fd.
    Locks are shared for reading and exclusive for writing: multiple 
    processes can read simultaneously, but a writer excludes everybody.
    Blocks until the lock can be obtained.

    fd -- file descriptor (int) or file object
    lock_type -- LCK_NOLOCK, LCK_FCNTL, LCK_FLOCK or LCK_FCNTL|LCK_FLOCK.
                LCK_NOLOCK does nothing and can't be combined.
    action -- LCK_READ, LCK_WRITE or LCK_UNLOCK

    raises: PilotProxyInputError -- for invalid lock_type or action
            ProxyLockError -- if (one of) the lock(s) can't be (un)set
    """
    if not lock_type or lock_type & ~(LCK_NOLOCK | LCK_BOTH):
        raise PilotProxyInputError("Invalid lock_type",
            "Unknown lock type %r" % lock_type)

    if lock_type & LCK_NOLOCK:
        if lock_type != LCK_NOLOCK:
            raise PilotProxyInputError("Invalid lock_type",
                "LCK_NOLOCK can't be combined with other lock types")
        return

    if action not in _LOCK_OPS:
        raise PilotProxyInputError("Invalid action",
            "Unknown lock action %r" % action)
    op = _LOCK_OPS[action]

    error = None
    if lock_type & LCK_FLOCK:
        try:
            fcntl.flock(fd, op)
        except OSError as err:
            error = ProxyLockError("flock", "flock() failed: %s" % err.strerror)
            if action != LCK_UNLOCK:
                raise error

    if lock_type & LCK_FCNTL:
        try:
            # range lock from 0 up to EOF, F_SETLKW
            fcntl.lockf(fd, op)
        except OSError as err:
            if lock_type & LCK_FLOCK and action != LCK_UNLOCK:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                except OSError as err2:
                    log.warning("filelock: cannot release flock: %s",
                        err2.strerror)
            error = ProxyLockError("fcntl", "fcntl() lock failed: %s" % err.strerror)

    if error:
        raise error


StatSnapshot = namedtuple('StatSnapshot', 'size mtime ctime uid mode')

def stat_snapshot(fd):
    """ Returns the StatSnapshot of the open file fd. """
    st = os.fstat(fd)
    return StatSnapshot(st.st_size, st.st_mtime_ns, st.st_ctime_ns,
                        st.st_uid, st.st_mode)

def unchanged(old, new):
    """ Size, mtime and ctime should have stayed the same. ctime is the 
        important one, it can't be set back with touch.
    """
    return old.size == new.size and old.mtime == new.mtime \
        and old.ctime == new.ctime


class ProxyFileDescriptor(object):
    """ 
    An opened proxy file during a single read_proxy() call: 
    descriptor, lock state and latest metadata snapshot.
    """

    def __init__(self, path, lock_type):
        """
        path -- file to open for reading
        lock_type -- see filelock()

        raises ProxyIOError -- if path can't be opened
        """
        self.path = path
        self.lock_type = lock_type
        self.locked = False
        self.snapshot = None
        try:
            self.fd = os.open(path, os.O_RDONLY)
        except OSError as err:
            log.warning("read_proxy: cannot open proxy %s: %s", path,
                err.strerror)
            raise ProxyIOError("open", 
                "Cannot open proxy '%s': %s" % (path, err.strerror))

    def lock(self):
        try:
            filelock(self.fd, self.lock_type, LCK_READ)
        except ProxyLockError as err:
            log.warning("read_proxy: cannot lock proxy %s: %s", self.path, err)
            raise
        self.locked = True

    def stat(self):
        """ Takes a new snapshot, which becomes the current one. """
        try:
            self.snapshot = stat_snapshot(self.fd)
        except OSError as err:
            log.warning("read_proxy: cannot stat proxy %s: %s",
                self.path, err.strerror)
            raise ProxyIOError("fstat",
                "Cannot stat proxy '%s': %s" % (self.path, err.strerror))
        return self.snapshot

    def read(self, buf, size):
        """ Reads up to size bytes into buf. Returns number of bytes read. """
        view = memoryview(buf)[:size]
        nread = 0
        try:
            while nread < size:
                n = os.readv(self.fd, [view[nread:]])
                if n == 0:
                    break
                nread += n
        except OSError as err:
            raise ProxyIOError("read",
                "Cannot read proxy '%s': %s" % (self.path, err.strerror))
        finally:
            view.release()
        return nread

    def rewind(self):
        try:
            os.lseek(self.fd, 0, os.SEEK_SET)
        except OSError as err:
            raise ProxyIOError("lseek",
                "Cannot rewind proxy '%s': %s" % (self.path, err.strerror))

    def close(self):
        """ Unlocks and closes the file. Unlock errors are only logged, 
            since we are done reading by now.
        """
        if self.locked:
            try:
                filelock(self.fd, self.lock_type, LCK_UNLOCK)
            except ProxyLockError as err:
                log.warning("read_proxy: cannot unlock proxy %s: %s",
                    self.path, err)
            self.locked = False
        os.close(self.fd)


def _alloc(size):
    """ Returns a buffer for size bytes plus a trailing '\\0'. """
    try:
        return bytearray(size + 1)
    except MemoryError:
        log.warning("read_proxy: out of memory")
        raise ProxyMemoryError("malloc", 
            "Cannot allocate %d bytes for proxy" % (size + 1))


def _read_consistent(pfd, uid, tries, delay):
    """ Checks ownership and mode of the opened file and reads it until
        two consecutive snapshots agree that it did not change.
    """
    snapshot = pfd.stat()
    if snapshot.uid != uid or snapshot.mode & UNSAFE_MODE_BITS:
        log.warning("read_proxy: unsafe permissions on proxy %s", pfd.path)
        raise ProxyPermissionError("permissions",
            "Proxy '%s' must be owned by uid %d and not be readable or "
            "writable for group and others" % (pfd.path, uid))

    buf = _alloc(snapshot.size)
    for attempt in range(tries):
        nread = pfd.read(buf, snapshot.size)
        latest = pfd.stat()
        if unchanged(snapshot, latest):
            # still check for a short read
            if nread != snapshot.size:
                raise ProxyIOError("read",
                    "Read %d of %d bytes from proxy '%s'" % \
                    (nread, snapshot.size, pfd.path))
            buf[nread] = 0
            return bytes(buf[:nread])

        log.debug("read_proxy: proxy %s changed during read (attempt %d)",
            pfd.path, attempt + 1)
        if attempt < tries - 1:
            buf = _alloc(latest.size)
            snapshot = latest
            time.sleep(delay)
            pfd.rewind()

    log.warning("read_proxy: proxy %s kept changing, giving up after %d reads",
        pfd.path, tries)
    raise TooManyRetriesError("retries",
        "Proxy '%s' changed during each of %d reads" % (pfd.path, tries))


def read_proxy(path, lock_type=LCK_NOLOCK, tries=READ_TRIES, delay=RETRY_DELAY):
    """
    Reads the proxy file at path. When running with euid root on behalf
    of a non-root user, privilege is dropped to the real uid/gid while 
    accessing the file. The file must be owned by the real uid and may
    not be readable or writable by group or others.
    A file which changes while being read (size, mtime or ctime) is 
    read again, at most tries times.

    path -- proxy file
    lock_type -- see filelock()

    returns -- the file contents (bytes)
    raises: PrivilegeError, ProxyIOError, ProxyLockError, 
            ProxyPermissionError, ProxyMemoryError, TooManyRetriesError
    """
    ids = PrivilegeSnapshot.current()
    dropped = False
    if ids.needs_drop:
        try:
            priv_drop(ids.uid, ids.gid)
        except PrivilegeError:
            log.warning("read_proxy: cannot drop privilege")
            raise
        dropped = True

    try:
        pfd = ProxyFileDescriptor(path, lock_type)
        try:
            pfd.lock()
            return _read_consistent(pfd, ids.uid, tries, delay)
        finally:
            pfd.close()
    finally:
        if dropped and not raise_priv(ids.euid, ids.egid):
            log.warning("read_proxy: cannot raise privilege back to euid %d",
                ids.euid)
