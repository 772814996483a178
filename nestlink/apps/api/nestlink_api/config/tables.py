"""Supabase table names.

Every name is overridable through ``NESTLINK_TBL_<NAME>`` so deployments can
use obfuscated table names without code changes.
"""

import os
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class Tables:
    access_requests: str = "tblAccessRequests"
    clients: str = "tblClients"
    client_members: str = "tblClientMembers"
    tenants: str = "tblTenants"
    super_admins: str = "tblSuperAdmins"
    buildings: str = "tblBuildings"
    apartments: str = "tblApartments"
    client_subscription: str = "tblClient_Subscription"
    polar_subscriptions: str = "tblPolarSubscriptions"
    server_logs: str = "tblServerLogs"

    @classmethod
    def from_env(cls) -> "Tables":
        overrides = {}
        for f in fields(cls):
            value = os.getenv(f"NESTLINK_TBL_{f.name.upper()}", "").strip()
            if value:
                overrides[f.name] = value
        return cls(**overrides)
