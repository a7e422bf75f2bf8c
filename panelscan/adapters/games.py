"""Built-in adapters for the three scanned games."""

from __future__ import annotations

from panelscan.adapters.base import DomainAdapter


class GenshinAdapter(DomainAdapter):
    """Genshin Impact showcase: five artifacts make a complete build."""

    domain = "gs"
    endpoint = "api/uid/{uid}"

    def validate_uid(self, uid: int) -> bool:
        return 100_000_000 <= uid <= 9_999_999_999

    def extract_records(self, payload: dict) -> list[dict]:
        records = []
        for avatar in payload.get("avatarInfoList") or []:
            entity_id = avatar.get("avatarId")
            if entity_id is None:
                continue
            equip = avatar.get("equipList") or []
            artifacts = [e for e in equip if (e.get("flat") or {}).get("itemType") == "ITEM_RELIQUARY"]
            weapons = [e for e in equip if (e.get("flat") or {}).get("itemType") == "ITEM_WEAPON"]
            if len(artifacts) < 5:
                continue
            records.append(
                {
                    "entity_id": str(entity_id),
                    "weapon": weapons[0] if weapons else None,
                    "artifacts": artifacts,
                    "props": avatar.get("fightPropMap") or {},
                }
            )
        return records


class StarRailAdapter(DomainAdapter):
    """Honkai: Star Rail showcase: six relics make a complete build."""

    domain = "sr"
    endpoint = "api/hsr/uid/{uid}"

    def validate_uid(self, uid: int) -> bool:
        return 100_000_000 <= uid <= 9_999_999_999

    def extract_records(self, payload: dict) -> list[dict]:
        detail = payload.get("detailInfo") or {}
        records = []
        for avatar in detail.get("avatarDetailList") or []:
            entity_id = avatar.get("avatarId")
            relics = avatar.get("relicList") or []
            if entity_id is None or len(relics) < 6:
                continue
            records.append(
                {
                    "entity_id": str(entity_id),
                    "weapon": avatar.get("equipment"),
                    "relics": relics,
                }
            )
        return records


class ZenlessAdapter(DomainAdapter):
    """Zenless Zone Zero showcase; UIDs are exactly eight digits."""

    domain = "zzz"
    endpoint = "api/zzz/uid/{uid}"
    fallback_base_url = "https://profile.microgg.cn/"

    def validate_uid(self, uid: int) -> bool:
        return 10_000_000 <= uid <= 99_999_999

    def extract_records(self, payload: dict) -> list[dict]:
        showcase = (payload.get("PlayerInfo") or {}).get("ShowcaseDetail") or {}
        records = []
        for avatar in showcase.get("AvatarList") or []:
            entity_id = avatar.get("Id")
            discs = avatar.get("EquippedList") or []
            if entity_id is None or len(discs) < 6:
                continue
            records.append(
                {
                    "entity_id": str(entity_id),
                    "weapon": avatar.get("Weapon"),
                    "discs": discs,
                    "avatar": avatar,
                }
            )
        return records
