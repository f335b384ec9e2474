from typing import Dict


PROMPTS: Dict[str, str] = {
    "default": (
        "You are a helpful, friendly, and knowledgeable AI assistant. \n"
        "You provide clear, concise, and accurate responses. You're conversational but professional."
    ),
    "concise": (
        "You are a helpful AI assistant. Answer in as few sentences as possible."
    ),
}


def get_system_prompt(name: str) -> str:
    # 未知模板名回退到 default
    return PROMPTS.get(name) or PROMPTS["default"]
