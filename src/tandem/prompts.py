from pydantic import BaseModel

from tandem.transcript.messages import Message


class Prompts:
    actions = """You are Tandem, an AI-powered coding assistant.
You work inside the user's editor and answer questions about their code.
You write new code, explain existing code, find bugs and suggest fixes.
"""

    rules = """In your responses, obey the following rules:
- Be as brief and concise as possible without losing clarity.
- All code snippets have to be markdown-formatted, and placed in-between triple backticks like this ```.
- Answer questions only if you know the answer or can make a well-informed guess. Otherwise tell the user you don't know.
- Do not make any assumptions about the code and file names or any misleading information.
"""

    answer = """Understood. I am Tandem, an AI assistant for coding.
I will answer questions, explain code and generate code as concisely and clearly as possible.
My responses will be formatted using Markdown syntax for code blocks.
I will acknowledge when I don't know an answer or need more context."""

    codebase = """You have access to the `{codebase}` repository.
You are able to answer questions about the `{codebase}` repository.
I will provide the relevant code snippets from the `{codebase}` repository when necessary to answer my questions.
"""

    codebase_answer = "I have access to the `{codebase}` repository and can answer questions about its files."

    code_context = "Use following code snippet from file `{file_name}`:\n```\n{content}\n```"

    selection_context = "I have the `{file_name}` file opened in my editor. The selected code is:\n```\n{content}\n```"

    context_ack = "Ok."

    next_questions = """Assume I have an answer to the following request:
{question}

Generate one to three follow-up discussion topics that the human can ask you to uphold the conversation.
Keep the topics as concise (1-5 words) and relevant as possible.
Put each topic on its own line starting with "-" and do not number them."""

    plugin_selection = """I will give you a list of functions and a user request. Choose the functions that can give context needed to answer the request.
Reply with a JSON array of objects with "name" and "parameters" keys, where "parameters" follows the function's JSON schema.
Reply with [] when no function is relevant. Reply with JSON only.

Functions:
{functions}

Request: {query}"""

    plugin_results = "I have following responses from external API that I called now:\n{results}"

    plugin_results_answer = "Understood, I have additional knowledge when answering your question."


class Premade(BaseModel):
    """User replacements for the opening instructions. Empty fields keep the defaults."""

    actions: str = ""
    rules: str = ""
    answer: str = ""


def get_preamble(codebase: str | None = None, premade: Premade | None = None) -> list[Message]:
    prompts = Prompts()
    premade = premade or Premade()
    actions = premade.actions or prompts.actions
    rules = premade.rules or prompts.rules
    answer = premade.answer or prompts.answer
    preamble = [
        Message(speaker="human", text=actions + "\n" + rules),
        Message(speaker="assistant", text=answer),
    ]
    if codebase:
        preamble.extend(
            [
                Message(speaker="human", text=prompts.codebase.format(codebase=codebase)),
                Message(speaker="assistant", text=prompts.codebase_answer.format(codebase=codebase)),
            ]
        )
    return preamble
