"""
Built-in role catalog used when no ROLE_CONFIG_PATH is configured.

Each top-level key is a configuration section understood by
authz.catalog.RoleCatalog.from_config.
"""

RESOURCES = [
    "patients",
    "immunization_records",
    "facilities",
    "vaccines",
    "notifications",
    "users",
    "reports",
    "system_settings",
    "vaccine_schedules",
    "vaccine_schedule_items",
    "supplementary_immunizations",
]

ROLES = {
    "administrator": {
        "description": "System administrators with full access to all facilities",
        "level": 4,
        "unrestricted": True,
        "permissions": {
            "patients": ["create", "read", "update", "delete"],
            "immunization_records": ["create", "read", "update", "delete"],
            "facilities": ["create", "read", "update", "delete"],
            "vaccines": ["create", "read", "update", "delete"],
            "notifications": ["create", "read", "update", "delete"],
            "users": ["create", "read", "update", "delete"],
            "reports": ["create", "read", "update", "delete"],
            "system_settings": ["read", "update"],
        },
        "dataAccess": "all_facilities",
        "specialPermissions": [
            "user_management",
            "system_configuration",
            "audit_access",
            "cross_facility_access",
        ],
        "canAccessMultipleFacilities": True,
    },
    "supervisor": {
        "description": "Facility supervisors with administrative access to their facility",
        "level": 3,
        "permissions": {
            "patients": ["create", "read", "update"],
            "immunization_records": ["create", "read", "update"],
            "facilities": ["read", "update"],
            "vaccines": ["read", "update"],
            "notifications": ["create", "read", "update", "delete"],
            "users": ["create", "read", "update"],
            "reports": ["create", "read", "update"],
            "vaccine_schedules": ["read"],
            "vaccine_schedule_items": ["read"],
            "supplementary_immunizations": ["create", "read", "update"],
        },
        "dataAccess": "facility_only",
        "specialPermissions": [
            "facility_user_management",
            "facility_reports",
            "facility_settings",
        ],
        "canAccessMultipleFacilities": False,
    },
    "doctor": {
        "description": "Healthcare professionals managing patient care",
        "level": 2,
        "permissions": {
            "patients": ["create", "read", "update"],
            "immunization_records": ["create", "read", "update"],
            "facilities": ["read"],
            "vaccines": ["read"],
            "notifications": ["create", "read", "update"],
            "users": ["read"],
            "reports": ["read"],
            "vaccine_schedules": ["read"],
            "vaccine_schedule_items": ["read"],
            "supplementary_immunizations": ["create", "read", "update"],
        },
        "dataAccess": "facility_only",
        "specialPermissions": ["patient_care", "medical_records_access"],
        "canAccessMultipleFacilities": False,
    },
    "user": {
        "description": "Basic users with limited access",
        "level": 1,
        "permissions": {
            "patients": ["read"],
            "immunization_records": ["read"],
            "facilities": ["read"],
            "vaccines": ["read"],
            "notifications": ["read"],
            "users": [],
            "reports": [],
        },
        "dataAccess": "facility_only",
        "specialPermissions": [],
        "canAccessMultipleFacilities": False,
    },
}

SECURITY_RULES = {
    "patients": {"facilityField": "facilityId", "documentSecurity": True},
    "immunization_records": {"facilityField": "facilityId", "documentSecurity": True},
    "facilities": {"facilityField": "id", "documentSecurity": True},
    "vaccines": {"facilityField": "facilityId", "documentSecurity": False},
    "notifications": {"facilityField": "facilityId", "documentSecurity": True},
    "users": {"facilityField": "facilityId", "documentSecurity": True},
    "reports": {"facilityField": "facilityId", "documentSecurity": True},
    "system_settings": {"facilityField": "facilityId", "documentSecurity": False},
    "vaccine_schedules": {"facilityField": "facilityId", "documentSecurity": False},
    "vaccine_schedule_items": {"facilityField": "facilityId", "documentSecurity": False},
    "supplementary_immunizations": {"facilityField": "facilityId", "documentSecurity": True},
}

DEFAULT_CONFIG = {
    "roles": ROLES,
    "resources": RESOURCES,
    "security_rules": SECURITY_RULES,
}
