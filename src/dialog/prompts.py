from __future__ import annotations

from typing import Any, Optional

import structlog

from src.dialog.locale import LocaleCode, normalize_locale

logger = structlog.get_logger(__name__)

# Spoken prompts keyed by prompt key, then locale. Templates use str.format fields;
# missing fields render as empty strings.
PROMPTS: dict[str, dict[LocaleCode, str]] = {
    # Generic
    "not_understood": {
        "en": "Sorry, I did not catch that.",
        "hi": "माफ़ कीजिए, मैं समझ नहीं पाया।",
        "mr": "माफ करा, मला समजले नाही.",
    },
    "invalid_phone": {
        "en": "That doesn't look like a valid 10-digit number. Please try again.",
        "hi": "यह वैध 10 अंकों का नंबर नहीं लगता। कृपया फिर से प्रयास करें।",
        "mr": "हा वैध 10 अंकी नंबर वाटत नाही. कृपया पुन्हा प्रयत्न करा.",
    },
    "invalid_phone_length": {
        "en": "I need all 10 digits of your mobile number. Please say it again.",
        "hi": "मुझे आपके मोबाइल नंबर के पूरे 10 अंक चाहिए। कृपया फिर से बोलें।",
        "mr": "मला तुमच्या मोबाइल नंबरचे सर्व 10 अंक हवे आहेत. कृपया पुन्हा सांगा.",
    },
    "invalid_phone_prefix": {
        "en": "Mobile numbers start with 6, 7, 8 or 9. Please try again.",
        "hi": "मोबाइल नंबर 6, 7, 8 या 9 से शुरू होते हैं। कृपया फिर से प्रयास करें।",
        "mr": "मोबाइल नंबर 6, 7, 8 किंवा 9 ने सुरू होतात. कृपया पुन्हा प्रयत्न करा.",
    },
    "invalid_code": {
        "en": "Please tell me a valid {code_length}-digit code.",
        "hi": "कृपया {code_length} अंकों का कोड बताएं।",
        "mr": "कृपया {code_length} अंकी कोड सांगा.",
    },
    "invalid_age": {
        "en": "Please tell me a valid age.",
        "hi": "कृपया सही उम्र बताएं।",
        "mr": "कृपया योग्य वय सांगा.",
    },
    "invalid_name": {
        "en": "Please say your name again.",
        "hi": "कृपया अपना नाम फिर से बताएं।",
        "mr": "कृपया तुमचे नाव पुन्हा सांगा.",
    },
    "invalid_gender": {
        "en": "Please say male or female.",
        "hi": "कृपया पुरुष या महिला बोलें।",
        "mr": "कृपया पुरुष किंवा स्त्री सांगा.",
    },

    # Login
    "login_ask_phone": {
        "en": "Please tell me your phone number.",
        "hi": "कृपया अपना फोन नंबर बताएं।",
        "mr": "कृपया तुमचा फोन नंबर सांगा.",
    },
    "login_read_back": {
        "en": "I heard {phone_voice}. Sending the secret code now.",
        "hi": "मैंने सुना {phone_voice}। अब गुप्त कोड भेज रहा हूं।",
        "mr": "मी ऐकले {phone_voice}. आता गुप्त कोड पाठवत आहे.",
    },
    "login_waiting_code": {
        "en": "Waiting for your secure code.",
        "hi": "आपके सुरक्षित कोड का इंतज़ार कर रहा हूं।",
        "mr": "तुमच्या सुरक्षित कोडची वाट पाहत आहे.",
    },
    "login_send_failed": {
        "en": "I could not send the code. Please try again later.",
        "hi": "मैं कोड नहीं भेज पाया। कृपया बाद में प्रयास करें।",
        "mr": "मी कोड पाठवू शकलो नाही. कृपया नंतर प्रयत्न करा.",
    },
    "login_ask_code": {
        "en": "Please tell me the {code_length}-digit code.",
        "hi": "कृपया {code_length} अंकों का कोड बताएं।",
        "mr": "कृपया {code_length} अंकी कोड सांगा.",
    },
    "login_verify_failed": {
        "en": "That code did not work.",
        "hi": "यह कोड काम नहीं किया।",
        "mr": "हा कोड चालला नाही.",
    },
    "login_welcome_back": {
        "en": "Welcome back, {name}.",
        "hi": "फिर से स्वागत है, {name}।",
        "mr": "पुन्हा स्वागत आहे, {name}.",
    },
    "login_ask_name": {
        "en": "What is your name?",
        "hi": "आपका नाम क्या है?",
        "mr": "तुमचे नाव काय आहे?",
    },
    "login_saved": {
        "en": "Thank you, {name}. You are all set.",
        "hi": "धन्यवाद, {name}। आप तैयार हैं।",
        "mr": "धन्यवाद, {name}. तुमचे सर्व तयार आहे.",
    },

    # Registration
    "register_ask_name": {
        "en": "What is your name?",
        "hi": "आपका नाम क्या है?",
        "mr": "तुमचे नाव काय आहे?",
    },
    "register_ask_phone": {
        "en": "What is your phone number?",
        "hi": "आपका फोन नंबर क्या है?",
        "mr": "तुमचा फोन नंबर काय आहे?",
    },
    "register_ask_gender": {
        "en": "Are you Male or Female?",
        "hi": "आप पुरुष हैं या महिला?",
        "mr": "तुम्ही पुरुष आहात की स्त्री?",
    },
    "register_ask_age": {
        "en": "How old are you?",
        "hi": "आपकी उम्र क्या है?",
        "mr": "तुमचे वय किती आहे?",
    },
    "register_done": {
        "en": "Thank you, {name}. Your profile is saved.",
        "hi": "धन्यवाद, {name}। आपकी प्रोफ़ाइल सेव हो गई है।",
        "mr": "धन्यवाद, {name}. तुमची प्रोफाइल जतन झाली आहे.",
    },

    # Schedule negotiation
    "schedule_intro": {
        "en": "Let's check your medicine times.",
        "hi": "आइए आपकी दवाई का समय देखें।",
        "mr": "चला तुमच्या औषधांच्या वेळा तपासूया.",
    },
    "schedule_ask_change": {
        "en": "{medicine} is set for {times}. Would you like to change it?",
        "hi": "{medicine} का समय {times} है। क्या आप इसे बदलना चाहते हैं?",
        "mr": "{medicine} ची वेळ {times} आहे. तुम्हाला ती बदलायची आहे का?",
    },
    "schedule_ask_time": {
        "en": "What time should I remind you about {medicine}?",
        "hi": "{medicine} के लिए आपको कब याद दिलाऊं?",
        "mr": "{medicine} साठी तुम्हाला कधी आठवण करू?",
    },
    "schedule_updated": {
        "en": "Okay, {medicine} at {time}.",
        "hi": "ठीक है, {medicine} {time} पर।",
        "mr": "ठीक आहे, {medicine} {time} ला.",
    },
    "schedule_kept": {
        "en": "Keeping {medicine} at {times}.",
        "hi": "{medicine} का समय {times} ही रहेगा।",
        "mr": "{medicine} ची वेळ {times} च राहील.",
    },
    "schedule_done": {
        "en": "All done. Your reminders are set.",
        "hi": "सब हो गया। आपके रिमाइंडर सेट हैं।",
        "mr": "सर्व झाले. तुमचे रिमाइंडर सेट आहेत.",
    },

    # Alarm
    "alarm_ask": {
        "en": "{name}, it is time for your {medicine}. Say taken, skip or snooze.",
        "hi": "{name}, आपकी {medicine} लेने का समय हो गया है। ले लिया, नहीं या बाद में बोलें।",
        "mr": "{name}, तुमची {medicine} घेण्याची वेळ झाली आहे. घेतले, नाही किंवा नंतर सांगा.",
    },
    "alarm_not_understood": {
        "en": "Please say taken, skip or snooze.",
        "hi": "कृपया ले लिया, नहीं या बाद में बोलें।",
        "mr": "कृपया घेतले, नाही किंवा नंतर सांगा.",
    },
    "alarm_taken": {
        "en": "Great job! Medicine recorded.",
        "hi": "शाबाश! दवाई नोट कर ली।",
        "mr": "छान! औषध नोंदवले.",
    },
    "alarm_skipped": {
        "en": "Okay, I recorded that you skipped this dose.",
        "hi": "ठीक है, मैंने नोट कर लिया कि आपने यह खुराक छोड़ दी।",
        "mr": "ठीक आहे, तुम्ही हा डोस वगळला असे नोंदवले.",
    },
    "alarm_snoozed": {
        "en": "Okay, snoozing for {minutes} minutes. You have {left} snoozes left.",
        "hi": "ठीक है, {minutes} मिनट के लिए याद दिला रहा हूं। आपके पास {left} स्नूज़ बचे हैं।",
        "mr": "ठीक आहे, {minutes} मिनिटांसाठी आठवण करतो. तुमच्याकडे {left} स्नूझ उरले आहेत.",
    },
    "alarm_forced_skip": {
        "en": "You have delayed this medicine too many times. For your safety, I am marking it as Not Taken.",
        "hi": "आपने इस दवाई को बहुत बार टाला है। आपकी सुरक्षा के लिए, मैं इसे नहीं लिया के रूप में चिह्नित कर रहा हूं।",
        "mr": "तुम्ही हे औषध खूप वेळा पुढे ढकलले आहे. तुमच्या सुरक्षिततेसाठी, मी हे घेतले नाही म्हणून नोंदवत आहे.",
    },
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_prompt(key_or_text: Optional[str], locale: Optional[str] = "en", **values: Any) -> str:
    """
    Render a prompt key for a locale.

    Unknown keys are treated as literal text so flows can pass ad-hoc sentences.
    """
    if not key_or_text:
        return ""
    table = PROMPTS.get(key_or_text)
    if table is None:
        return key_or_text
    template = table.get(normalize_locale(locale)) or table["en"]
    try:
        return template.format_map(_Blank(values))
    except (ValueError, IndexError) as e:
        logger.warning("Prompt format failed", key=key_or_text, error=str(e))
        return template
