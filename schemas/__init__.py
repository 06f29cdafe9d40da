"""
Mystery Box Schemas Package
Provides typed data structures shared by sync, selection and bundle history.
"""

from .mystery_box_schemas import (
    # Money helpers
    to_money,
    optional_money,

    # Catalog schemas
    VariantRef,
    ImageRef,
    CatalogItemData,
    CatalogPage,
    ShopCredentials,
    UpsertOutcome,
    SyncReport,

    # Template / instance schemas
    BundleTemplateData,
    SelectedItem,
    BundleDraft,
    BundleInstanceData,
    InstanceStatus,
    ALLOWED_STATUS_TRANSITIONS,

    # Statistics
    NumericRange,
    BundleStatistics,
)
