# Plugin identity tables.
# A plugin is "present" when its slug equals the canonical id or one of the
# historical aliases listed for it. No substring matching.
from typing import Dict, FrozenSet, Iterable, List, Optional, Set


# Canonical slug -> known historical / edition slugs
REQUIRED_PLUGINS: Dict[str, FrozenSet[str]] = {
    "really-simple-security": frozenset({
        "really-simple-ssl",
        "really-simple-ssl-pro",
        "really-simple-security-pro",
    }),
    "wp-seopress": frozenset({
        "seopress",
        "wp-seopress-pro",
        "seopress-pro",
    }),
    "wp-mail-smtp": frozenset({
        "wp-mail-smtp-pro",
    }),
}

# Deprecated-but-functional alternative -> canonical replacement
DEPRECATED_ALTERNATIVES: Dict[str, str] = {
    "wordfence": "really-simple-security",
    "sucuri-scanner": "really-simple-security",
    "wordpress-seo": "wp-seopress",
    "seo-by-rank-math": "wp-seopress",
    "all-in-one-seo-pack": "wp-seopress",
    "wp-smtp": "wp-mail-smtp",
    "post-smtp": "wp-mail-smtp",
    "easy-wp-smtp": "wp-mail-smtp",
}

PROBLEMATIC_PLUGINS: Dict[str, str] = {
    "jetpack": "Heavy, often unnecessary features enabled",
    "broken-link-checker": "Database intensive, causes bloat",
    "wp-statistics": "Database heavy, use GA instead",
    "revision-control": "Often misconfigured, causes issues",
    "w3-total-cache": "Conflicts with host-level caching",
    "wp-super-cache": "Conflicts with host-level caching",
}

STANDARD_PLUGINS: FrozenSet[str] = frozenset({
    # Page builders
    "elementor", "elementor-pro", "beaver-builder-lite-version", "bb-plugin", "bb-theme-builder",
    # Theme
    "astra-addon-plugin",
    # Forms
    "wpforms-lite", "gravityforms", "contact-form-7",
    # Performance
    "wp-optimize", "autoptimize", "wp-rocket",
    # Utilities
    "duplicate-post", "redirection", "safe-svg", "classic-editor", "advanced-custom-fields", "acf-pro",
    # Commerce / analytics
    "woocommerce", "google-site-kit",
}) | frozenset(REQUIRED_PLUGINS) | frozenset().union(*REQUIRED_PLUGINS.values())

SECURITY_PLUGIN = "really-simple-security"
OTHER_SECURITY_PLUGINS: FrozenSet[str] = frozenset({
    "wordfence",
    "sucuri-scanner",
    "better-wp-security",
    "ithemes-security-pro",
    "all-in-one-wp-security-and-firewall",
})

SEO_PLUGIN = "wp-seopress"
OTHER_SEO_PLUGINS: FrozenSet[str] = frozenset({
    "wordpress-seo",
    "seo-by-rank-math",
    "all-in-one-seo-pack",
})

# Never auto-update these
NO_AUTO_UPDATE_PLUGINS: FrozenSet[str] = frozenset({
    "woocommerce", "elementor-pro", "bb-plugin", "gravityforms", "acf-pro",
})


def identities(canonical: str) -> Set[str]:
    """Every slug that counts as `canonical`."""
    return {canonical} | set(REQUIRED_PLUGINS.get(canonical, ()))


def matches(slug: str, canonical: str) -> bool:
    return slug in identities(canonical)


def find_plugin(slugs: Iterable[str], canonical: str) -> Optional[str]:
    """First slug from `slugs` that counts as `canonical`, if any."""
    known = identities(canonical)
    for slug in slugs:
        if slug in known:
            return slug
    return None


def deprecated_alternatives_for(canonical: str, slugs: Iterable[str]) -> List[str]:
    return [s for s in slugs if DEPRECATED_ALTERNATIVES.get(s) == canonical]
