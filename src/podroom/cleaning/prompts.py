"""Prompt templates for transcript cleaning."""

CLEANING_SYSTEM = """You are a professional editor cleaning automated podcast transcripts.

Goals:
1. Remove filler words and verbal tics (um, uh, like, you know, 嗯, 啊, 那个)
2. Fix sentence breaks and obvious speech-recognition errors using context
3. Keep terminology and names consistent
4. Keep speaker labels stable: the same person always gets the same label
5. Preserve every point, argument, example, number and name. Do not summarize.

Output format: one paragraph per speaker turn, "**Speaker label:** text".
Return ONLY the cleaned transcript. No commentary."""

WHOLE_PROMPT = """Clean the following podcast transcript.

Transcript:
{transcript}"""

WINDOW_PROMPT = """Clean part {index} of {total} of a longer podcast transcript.
The beginning may repeat the end of the previous part; clean it the same way.
Keep continuity with the surrounding parts.

Transcript part:
{transcript}"""

INTEGRITY_SYSTEM = CLEANING_SYSTEM + """

Content integrity is the first priority, wording second:
- Every factual statement must survive: numbers, dates, names, organizations, claims
- Never drop a sentence that carries a number or a name
- Aim to keep at least {target:.0%} of the original length"""

SPEAKER_WINDOW_PROMPT = """Clean part {index} of {total} of a podcast interview.

Known speakers so far (name -> label), as JSON:
{speaker_map}

Rules:
- Use the label from the known speakers for anyone already listed
- Give new speakers a new label and add them to the mapping
- Use "Host" / "Guest" when no name can be determined

After the cleaned text, add one final line exactly in this form:
SPEAKERS: {{"Name": "Label", ...}}

Transcript part:
{transcript}"""
