"""Marketplace categories tracked by default and their industries."""

import re
from typing import Optional

# slug -> (display name, industry)
TARGET_CATEGORIES: dict[str, tuple[str, str]] = {
    "saas": ("SaaS", "SaaS"),
    "ecommerce": ("E-commerce", "E-commerce"),
    "content": ("Content", "Content Sites"),
    "apps": ("Apps", "Mobile Apps"),
    "marketplace": ("Marketplace", "Marketplace"),
    "newsletter": ("Newsletter", "Newsletter"),
    "education": ("Education", "EdTech"),
    "dropshipping": ("Dropshipping", "Dropshipping"),
    "agency": ("Agency", "Digital Agency"),
    "course": ("Course", "Online Course"),
    "affiliate": ("Affiliate", "Affiliate Sites"),
    "directory": ("Directory", "Directory Sites"),
    "social": ("Social", "Social Networks"),
    "gaming": ("Gaming", "Gaming"),
    "crypto": ("Crypto", "Crypto/Blockchain"),
}


def slugify(value: str) -> str:
    """Lower-case a category label and collapse it to a URL slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug


def industry_for(category: Optional[str]) -> Optional[str]:
    """Map a category slug or label to its industry, falling back to the label."""
    if not category:
        return None
    slug = slugify(category)
    if slug in TARGET_CATEGORIES:
        return TARGET_CATEGORIES[slug][1]
    for name, industry in TARGET_CATEGORIES.values():
        if slugify(name) == slug or slugify(industry) == slug:
            return industry
    return category.strip()
