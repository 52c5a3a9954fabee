"""Mobile network operator lookup by MCC+MNC (first 5 digits of the IMSI)"""

from typing import Optional

# Database of mobile network operators by MCC+MNC
# Format: "MCCMNC": "Operator Name"
NETWORK_OPERATORS = {
    # China
    "46000": "China Mobile",
    "46001": "China Unicom",
    "46002": "China Mobile",
    "46003": "China Telecom",
    "46004": "China Mobile",
    "46005": "China Telecom",
    "46006": "China Unicom",
    "46007": "China Mobile",
    "46008": "China Mobile",
    "46009": "China Unicom",
    "46011": "China Telecom",
    "46015": "China Broadnet",
    "46020": "China Tietong",

    # Hong Kong / Macau / Taiwan
    "45400": "CSL",
    "45403": "3 (Hutchison)",
    "45406": "SmarTone",
    "45412": "China Mobile Hong Kong",
    "45416": "PCCW Mobile",
    "45500": "SmarTone Macau",
    "45501": "CTM",
    "46601": "Far EasTone",
    "46689": "T Star",
    "46692": "Chunghwa Telecom",
    "46697": "Taiwan Mobile",

    # Japan / Korea
    "44010": "NTT docomo",
    "44020": "SoftBank",
    "44050": "KDDI",
    "45005": "SK Telecom",
    "45006": "LG U+",
    "45008": "KT",

    # Southeast Asia
    "52001": "AIS",
    "52005": "dtac",
    "52099": "True Move",
    "52501": "Singtel",
    "52503": "M1",
    "52505": "StarHub",
    "50212": "Maxis",
    "50213": "CelcomDigi",
    "51010": "Telkomsel",
    "51011": "XL Axiata",
    "45201": "MobiFone",
    "45202": "Vinaphone",
    "45204": "Viettel",

    # Europe
    "20404": "Vodafone NL",
    "20408": "KPN",
    "20416": "Odido",
    "20601": "Proximus",
    "20610": "Orange Belgium",
    "20801": "Orange France",
    "20810": "SFR",
    "20815": "Free Mobile",
    "20820": "Bouygues Telecom",
    "21401": "Vodafone Spain",
    "21403": "Orange Spain",
    "21407": "Movistar",
    "22201": "TIM",
    "22210": "Vodafone Italia",
    "22288": "WindTre",
    "23001": "T-Mobile CZ",
    "23002": "O2 CZ",
    "23003": "Vodafone CZ",
    "23410": "O2 UK",
    "23415": "Vodafone UK",
    "23420": "Three UK",
    "23430": "EE",
    "26201": "Telekom.de",
    "26202": "Vodafone.de",
    "26203": "O2 Germany",

    # Americas
    "30220": "Rogers",
    "30221": "Telus",
    "30261": "Bell",
    "31026": "T-Mobile US",
    "31041": "AT&T",
    "31048": "Verizon",
    "33402": "Telcel",
    "72405": "Claro Brasil",
    "72406": "Vivo",
    "72410": "Vivo",

    # Oceania
    "50501": "Telstra",
    "50502": "Optus",
    "50503": "Vodafone AU",
    "53001": "One NZ",
    "53005": "Spark NZ",
}


def get_network_name(code: str) -> Optional[str]:
    """Get operator name for a 5-digit MCC+MNC code"""
    if not code:
        return None
    return NETWORK_OPERATORS.get(str(code).strip())


def operator_from_imsi(imsi: str) -> str:
    """Operator for an IMSI, or its raw 5-digit PLMN prefix when unmapped.

    Returns an empty string when the IMSI does not start with 5 digits
    (e.g. the firmware reports "unknown" while the SIM is absent).
    """
    imsi = (imsi or "").strip()
    plmn = imsi[:5]
    if len(imsi) <= 5 or not plmn.isdigit():
        return ""
    return get_network_name(plmn) or plmn
