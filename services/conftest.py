import os
import tempfile

# The repos bind their engines at import time; point them at throwaway
# SQLite files before any service module is imported.
_tmp = tempfile.mkdtemp(prefix="shop-services-")
os.environ.setdefault("PAYMENTS_DATABASE_URL", f"sqlite:///{_tmp}/payments.sqlite3")
os.environ.setdefault("MESSAGING_DATABASE_URL", f"sqlite:///{_tmp}/messaging.sqlite3")
