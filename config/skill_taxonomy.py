"""Skill taxonomy used to pull skills out of uploaded CV text.

Canonical names are what ends up in ``Candidate.skills``; synonyms are matched
as whole words, case-insensitively.
"""

SKILL_TAXONOMY = [
    # Languages
    {"canonical_skill": "Python", "synonyms": ["python3", "python 3"], "category": "Programming Language"},
    {"canonical_skill": "JavaScript", "synonyms": ["javascript", "ecmascript", "es6"], "category": "Programming Language"},
    {"canonical_skill": "TypeScript", "synonyms": ["typescript"], "category": "Programming Language"},
    {"canonical_skill": "Java", "synonyms": ["jdk", "j2ee"], "category": "Programming Language"},
    {"canonical_skill": "C#", "synonyms": ["c sharp", "csharp"], "category": "Programming Language"},
    {"canonical_skill": "Golang", "synonyms": ["go lang"], "category": "Programming Language"},
    {"canonical_skill": "PHP", "synonyms": ["php7", "php8"], "category": "Programming Language"},
    {"canonical_skill": "SQL", "synonyms": ["t-sql", "pl/sql"], "category": "Database"},

    # Frameworks and runtimes
    {"canonical_skill": "Node.js", "synonyms": ["nodejs", "node"], "category": "Runtime"},
    {"canonical_skill": "React", "synonyms": ["reactjs", "react.js"], "category": "Frontend"},
    {"canonical_skill": "Vue.js", "synonyms": ["vue", "vuejs"], "category": "Frontend"},
    {"canonical_skill": "Angular", "synonyms": ["angularjs"], "category": "Frontend"},
    {"canonical_skill": "Spring Boot", "synonyms": ["spring framework"], "category": "Framework"},
    {"canonical_skill": ".NET", "synonyms": ["dotnet", "asp.net"], "category": "Framework"},
    {"canonical_skill": "Django", "synonyms": [], "category": "Framework"},
    {"canonical_skill": "FastAPI", "synonyms": ["fast api"], "category": "Framework"},

    # Data stores
    {"canonical_skill": "PostgreSQL", "synonyms": ["postgres", "psql"], "category": "Database"},
    {"canonical_skill": "MySQL", "synonyms": ["mariadb"], "category": "Database"},
    {"canonical_skill": "MongoDB", "synonyms": ["mongo"], "category": "Database"},
    {"canonical_skill": "Redis", "synonyms": [], "category": "Database"},

    # Cloud and delivery
    {"canonical_skill": "AWS", "synonyms": ["amazon web services"], "category": "Cloud"},
    {"canonical_skill": "Azure", "synonyms": ["microsoft azure"], "category": "Cloud"},
    {"canonical_skill": "Google Cloud", "synonyms": ["gcp", "google cloud platform"], "category": "Cloud"},
    {"canonical_skill": "Docker", "synonyms": ["containerization"], "category": "DevOps"},
    {"canonical_skill": "Kubernetes", "synonyms": ["k8s"], "category": "DevOps"},
    {"canonical_skill": "Terraform", "synonyms": [], "category": "DevOps"},
    {"canonical_skill": "CI/CD", "synonyms": ["continuous integration", "continuous delivery", "jenkins", "github actions"], "category": "DevOps"},
    {"canonical_skill": "Git", "synonyms": ["github", "gitlab"], "category": "Tooling"},

    # Architecture and practice
    {"canonical_skill": "REST APIs", "synonyms": ["restful", "rest api"], "category": "Architecture"},
    {"canonical_skill": "GraphQL", "synonyms": [], "category": "Architecture"},
    {"canonical_skill": "Microservices", "synonyms": ["microservice", "micro services"], "category": "Architecture"},
    {"canonical_skill": "Machine Learning", "synonyms": ["ml", "deep learning"], "category": "AI"},
    {"canonical_skill": "Agile", "synonyms": ["scrum", "kanban"], "category": "Methodology"},

    # Recruitment-side skills common on agency CVs
    {"canonical_skill": "Account Management", "synonyms": ["key account management"], "category": "Commercial"},
    {"canonical_skill": "Project Management", "synonyms": ["prince2", "pmp"], "category": "Management"},
    {"canonical_skill": "Stakeholder Management", "synonyms": [], "category": "Management"},
    {"canonical_skill": "Leadership", "synonyms": ["team lead", "people management"], "category": "Soft Skill"},
]

TAXONOMY_VERSION = "taxo-v2"
